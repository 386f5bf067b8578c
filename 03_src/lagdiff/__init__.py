"""
Лаговые разности для числовых рядов.

Этот пакет содержит:
- lagged_difference: разность ряда с лагом (или лидом при отрицательном лаге)
- LagFeatures: калькулятор лаговых признаков для pandas
- LagDifferencePipeline: декларативный пайплайн на основе YAML-конфигурации
- Исключения InvalidSequence / InvalidLag для ошибок валидации входов
"""

from .exceptions import (
    LagDifferenceError,
    InvalidSequence,
    InvalidLag,
    ConfigError,
    FeatureGraphError,
)
from .lag_features import lagged_difference, coerce_lag, to_numeric_series, LagFeatures
from .feature_pipeline import LagDifferencePipeline

__all__ = [
    'lagged_difference',
    'coerce_lag',
    'to_numeric_series',
    'LagFeatures',
    'LagDifferencePipeline',
    'LagDifferenceError',
    'InvalidSequence',
    'InvalidLag',
    'ConfigError',
    'FeatureGraphError',
]
