"""
Исключения пакета lagdiff.

Ошибки валидации входов (InvalidSequence, InvalidLag) наследуются от ValueError,
поэтому вызывающий код может ловить их как обычную ошибку значения.
"""


class LagDifferenceError(ValueError):
    """Базовое исключение пакета."""

    def __init__(self, message: str, argument: str = None):
        super().__init__(message)
        self.argument = argument


class InvalidSequence(LagDifferenceError):
    """Вход не является упорядоченной числовой последовательностью."""

    def __init__(self, reason: str, argument: str = "sequence"):
        super().__init__(f"Некорректный аргумент '{argument}': {reason}", argument=argument)
        self.reason = reason


class InvalidLag(LagDifferenceError):
    """Лаг нельзя привести к целому числу."""

    def __init__(self, reason: str, argument: str = "lag"):
        super().__init__(f"Некорректный аргумент '{argument}': {reason}", argument=argument)
        self.reason = reason


class ConfigError(LagDifferenceError):
    """Ошибка чтения или разбора YAML-конфигурации."""
    pass


class FeatureGraphError(LagDifferenceError):
    """Ошибка построения графа зависимостей признаков (цикл, неизвестный вход)."""
    pass
