"""
Модуль для создания лаговых разностей (lag differences).

Содержит:
- lagged_difference: разность ряда с самим собой, сдвинутым на lag позиций
- Валидацию входов (числовая последовательность, целочисленный лаг)
- LagFeatures: калькулятор лаговых признаков (лаги, разности, процентные и
  логарифмические разности, сезонные разности)

Определение:
    R[i] = S[i] - S[i - k], если 0 <= i - k < n, иначе пропуск (NaN / pd.NA).
Положительный k - разность с прошлым, отрицательный k - с будущим ("lead").
"""

import logging
import math
import numbers
from collections.abc import Mapping, Sequence, Set
from typing import Any, Dict, List, Union

import numpy as np
import pandas as pd

from .exceptions import InvalidLag, InvalidSequence

__all__ = ["lagged_difference", "coerce_lag", "to_numeric_series", "LagFeatures"]

logger = logging.getLogger(__name__)

SequenceLike = Union[pd.Series, np.ndarray, Sequence]

_INT64_MAX = int(np.iinfo(np.int64).max)
# Наибольшее целое, которое float64 хранит без потери точности
_FLOAT_EXACT_INT = 2 ** 53


def _is_numeric_scalar(value: Any) -> bool:
    """True для числа (кроме bool) или маркера пропуска."""
    if value is None or value is pd.NA:
        return True
    if isinstance(value, (bool, np.bool_)):
        return False
    return isinstance(value, numbers.Number)


def _is_missing(value: Any) -> bool:
    if value is None or value is pd.NA:
        return True
    return isinstance(value, float) and math.isnan(value)


def _widen_unsigned(series: pd.Series) -> pd.Series:
    """
    Переводит беззнаковые целые в знаковые: иначе отрицательная разность
    переполняется по модулю 2**N. Значения выше int64 остаются точными int (dtype object).
    """
    if not pd.api.types.is_unsigned_integer_dtype(series.dtype):
        return series
    top = series.max() if len(series) else None
    if top is None or pd.isna(top) or int(top) <= _INT64_MAX:
        nullable = isinstance(series.dtype, pd.api.extensions.ExtensionDtype)
        return series.astype("Int64" if nullable else "int64")
    return series.astype(object)


def to_numeric_series(sequence: SequenceLike, argument: str = "sequence") -> pd.Series:
    """
    Приводит упорядоченную числовую последовательность к pd.Series без изменения входа.

    Допускаются pd.Series, одномерный np.ndarray и последовательности (list, tuple, range).
    Пропуски (None, NaN, pd.NA) допустимы, bool и нечисловые элементы - нет.
    Беззнаковые целые переводятся в знаковые, целые вне точности float64
    сохраняются как int Python (dtype object).

    Raises:
        InvalidSequence: если вход не является одномерной числовой последовательностью.
    """
    if sequence is None:
        raise InvalidSequence("ожидается числовая последовательность, получено None", argument)
    if isinstance(sequence, pd.DataFrame):
        raise InvalidSequence("ожидается одномерная последовательность, получен DataFrame", argument)
    if isinstance(sequence, (str, bytes, bytearray, Mapping, Set)):
        raise InvalidSequence(
            f"тип {type(sequence).__name__} не является упорядоченной числовой последовательностью",
            argument,
        )

    if isinstance(sequence, pd.Series):
        series = sequence
    elif isinstance(sequence, np.ndarray):
        if sequence.ndim != 1:
            raise InvalidSequence(f"ожидается одномерный массив, получено ndim={sequence.ndim}", argument)
        series = pd.Series(sequence)
    elif isinstance(sequence, Sequence):
        series = pd.Series(list(sequence), dtype=object if len(sequence) == 0 else None)
    else:
        raise InvalidSequence(
            f"тип {type(sequence).__name__} не является упорядоченной числовой последовательностью",
            argument,
        )

    dtype = series.dtype
    if pd.api.types.is_bool_dtype(dtype):
        raise InvalidSequence("булевы значения не считаются числовыми", argument)
    if pd.api.types.is_numeric_dtype(dtype):
        return _widen_unsigned(series)

    if dtype != object:
        raise InvalidSequence(f"нечисловой тип элементов: {dtype}", argument)

    # object: смешанные числа и пропуски (например, [1, None, 2.5] или Decimal)
    bad = [value for value in series if not _is_numeric_scalar(value)]
    if bad:
        raise InvalidSequence(f"нечисловой элемент {bad[0]!r}", argument)
    values = [np.nan if _is_missing(value) else value for value in series]
    present = [value for value in values if not _is_missing(value)]
    integral = bool(present) and all(isinstance(value, numbers.Integral) for value in present)
    if integral and any(abs(int(value)) > _FLOAT_EXACT_INT for value in present):
        # Большие целые вычитаются точно, без округления до float64
        exact = [value if _is_missing(value) else int(value) for value in values]
        return pd.Series(exact, index=series.index, name=series.name, dtype=object)
    try:
        return pd.Series(values, index=series.index, name=series.name, dtype="float64")
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidSequence(f"элементы нельзя привести к float: {e}", argument) from e


def coerce_lag(lag: Any, argument: str = "lag") -> int:
    """
    Приводит лаг к int.

    Принимаются целые (включая numpy), целочисленные float (2.0) и Decimal, строки
    с числом ("2", " -1 ", "3.0"). bool, None, дробные и бесконечные значения отклоняются.

    Raises:
        InvalidLag: если лаг нельзя привести к целому числу.
    """
    if lag is None:
        raise InvalidLag("ожидается целое число, получено None", argument)
    if isinstance(lag, (bool, np.bool_)):
        raise InvalidLag("bool не допускается в качестве лага", argument)
    if isinstance(lag, numbers.Integral):
        return int(lag)

    if isinstance(lag, str):
        text = lag.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            value = float(text)
        except ValueError:
            raise InvalidLag(f"строка {lag!r} не является числом", argument) from None
    elif isinstance(lag, numbers.Real) or (
            isinstance(lag, numbers.Number) and not isinstance(lag, numbers.Complex)):
        # Real и числа вне числовой башни (Decimal)
        try:
            value = float(lag)
        except (TypeError, ValueError, OverflowError):
            raise InvalidLag(f"значение {lag!r} нельзя привести к целому числу", argument) from None
    else:
        raise InvalidLag(f"тип {type(lag).__name__} нельзя привести к целому числу", argument)

    if not math.isfinite(value) or not value.is_integer():
        raise InvalidLag(f"значение {lag!r} не является целым числом", argument)
    return int(value)


def _bounded(k: int, n: int) -> int:
    """Ограничивает |k| длиной ряда: при |k| >= n результат и так целиком из пропусков."""
    return max(-n, min(k, n))


def _difference(series: pd.Series, k: int) -> pd.Series:
    """S[t] - S[t - k]; точные int (dtype object) вычитаются поэлементно."""
    k = _bounded(k, len(series))
    if series.dtype == object:
        return series - series.shift(k)
    return series.diff(periods=k)


def _as_float(series: pd.Series, argument: str = "sequence") -> pd.Series:
    try:
        return series.astype("float64")
    except OverflowError as e:
        raise InvalidSequence(f"значения не помещаются в float: {e}", argument) from e


def _restore_container(result: pd.Series, original: SequenceLike) -> SequenceLike:
    """Возвращает результат в контейнере того же вида, что и вход."""
    if isinstance(original, pd.Series):
        return result
    if isinstance(original, np.ndarray):
        return result.to_numpy()
    return result.tolist()


def lagged_difference(sequence: SequenceLike, lag: Any = 1) -> SequenceLike:
    """
    Лаговая разность: R[i] = S[i] - S[i - lag].

    Позиции без пары (первые lag при lag > 0, последние |lag| при lag < 0)
    заполняются пропуском. При |lag| >= len(S) результат целиком из пропусков,
    при lag = 0 - нули. Вход не изменяется.

    Args:
        sequence: pd.Series, одномерный np.ndarray или list/tuple чисел.
        lag: Целый лаг или значение, приводимое к целому ("2", 2.0).

    Returns:
        Новая последовательность той же длины: pd.Series (с исходным индексом)
        для pd.Series, np.ndarray для массива, list для прочих последовательностей.

    Raises:
        InvalidSequence: вход не является числовой последовательностью.
        InvalidLag: лаг нельзя привести к целому числу.

    Examples:
        >>> lagged_difference([1, 2, 4, 2, 3], 1)
        [nan, 1.0, 2.0, -2.0, 1.0]
        >>> lagged_difference([1, 2, 4, 2, 3], -1)
        [-1.0, -2.0, 2.0, -1.0, nan]
    """
    series = to_numeric_series(sequence)
    k = coerce_lag(lag)
    logger.debug("lagged_difference: n=%d, lag=%d, dtype=%s", len(series), k, series.dtype)
    result = _difference(series, k)
    return _restore_container(result, sequence)


class LagFeatures:
    """
    Класс-калькулятор для лаговых признаков.

    Все методы calculate_* принимают одномерный числовой ряд и возвращают
    pd.Series, выровненную по индексу входа.
    """

    def calculate_identity(self, series: SequenceLike) -> pd.Series:
        """Возвращает проверенный ряд без изменений (используется для переименования)."""
        return to_numeric_series(series)

    def calculate_lag(self, series: SequenceLike, lag: Any = 1) -> pd.Series:
        """Значение lag баров назад: S[t - lag]."""
        values = to_numeric_series(series)
        return values.shift(_bounded(coerce_lag(lag), len(values)))

    def calculate_lag_diff(self, series: SequenceLike, lag: Any = 1) -> pd.Series:
        """Разность с лагом: S[t] - S[t - lag]."""
        values = to_numeric_series(series)
        return _difference(values, coerce_lag(lag))

    def calculate_lag_pct_diff(self, series: SequenceLike, lag: Any = 1) -> pd.Series:
        """
        Относительная разность с лагом.
        PctDiff = (S[t] - S[t-lag]) / S[t-lag]; при нулевом знаменателе - NaN.
        """
        values = _as_float(to_numeric_series(series))
        shifted = values.shift(_bounded(coerce_lag(lag), len(values)))
        return (values - shifted) / shifted.replace(0, np.nan)

    def calculate_lag_log_diff(self, series: SequenceLike, lag: Any = 1) -> pd.Series:
        """
        Логарифмическая разность: ln(S[t] / S[t-lag]).
        Неположительные значения дают NaN.
        """
        values = _as_float(to_numeric_series(series))
        shifted = values.shift(_bounded(coerce_lag(lag), len(values)))
        valid = (values > 0) & (shifted > 0)
        return np.log((values / shifted).where(valid))

    def calculate_seasonal_diff(self, series: SequenceLike, period: Any = 24) -> pd.Series:
        """Сезонная разность: S[t] - S[t - period], period > 0."""
        p = coerce_lag(period, argument="period")
        if p <= 0:
            raise InvalidLag(f"сезонный период должен быть положительным, получено {p}", "period")
        values = to_numeric_series(series)
        return _difference(values, p)

    # -----------------------------
    # Работа с DataFrame
    # -----------------------------
    def get_feature_names(self, column: str, lags: List[Any]) -> List[str]:
        """Имена колонок, которые создаст add_lag_differences."""
        names = []
        for lag in lags:
            k = coerce_lag(lag)
            names += [f"{column}_Diff_Lag_{k}", f"{column}_PctDiff_Lag_{k}"]
        return names

    def add_lag_differences(self, df: pd.DataFrame, column: str, lags: List[Any]) -> pd.DataFrame:
        """
        Добавляет разности и относительные разности с лагами.

        Args:
            df: Исходный DataFrame (не изменяется).
            column: Колонка-источник.
            lags: Список лагов.

        Returns:
            Копия df с колонками {column}_Diff_Lag_{k} и {column}_PctDiff_Lag_{k}.
        """
        if column not in df.columns:
            raise KeyError(f"Колонка {column} не найдена в данных")

        new_columns: Dict[str, pd.Series] = {}
        for lag in lags:
            k = coerce_lag(lag)
            new_columns[f"{column}_Diff_Lag_{k}"] = self.calculate_lag_diff(df[column], k)
            new_columns[f"{column}_PctDiff_Lag_{k}"] = self.calculate_lag_pct_diff(df[column], k)
        return self._join(df, new_columns)

    def add_seasonal_differences(self, df: pd.DataFrame, column: str, periods: List[Any]) -> pd.DataFrame:
        """Добавляет сезонные разности {column}_Seasonal_Diff_{p}."""
        if column not in df.columns:
            raise KeyError(f"Колонка {column} не найдена в данных")

        new_columns: Dict[str, pd.Series] = {}
        for period in periods:
            p = coerce_lag(period, argument="period")
            new_columns[f"{column}_Seasonal_Diff_{p}"] = self.calculate_seasonal_diff(df[column], p)
        return self._join(df, new_columns)

    def _join(self, df: pd.DataFrame, new_columns: Dict[str, pd.Series]) -> pd.DataFrame:
        # Собираем одним concat, чтобы не фрагментировать DataFrame
        if not new_columns:
            return df.copy()
        features = pd.DataFrame(new_columns, index=df.index)
        result = df.drop(columns=[c for c in features.columns if c in df.columns])
        return pd.concat([result, features], axis=1)
