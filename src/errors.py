"""
Таксономия ошибок движка тюнинга.

    - ConfigurationError: некорректная ось сетки или конфигурация
    - InsufficientDataError: пара серия/конфигурация не дает валидных сплитов
    - TrainingFailure: предиктор упал при обучении
    - PersistenceFailure: сбой сохранения гиперпараметров или модели
    - AllConfigurationsFailed: ни одна конфигурация не пригодна
    - ScalerMismatchError: модель используется с чужими скейлерами
"""

from typing import Optional


class TuningError(Exception):
    """Базовая ошибка движка тюнинга"""


class ConfigurationError(TuningError, ValueError):
    """Сетка или конфигурация нарушает инвариант"""


class InsufficientDataError(TuningError):
    """Недостаточно баров для хотя бы одного валидного сплита"""

    def __init__(self, message: str, series_length: Optional[int] = None,
                 required: Optional[int] = None):
        super().__init__(message)
        self.series_length = series_length
        self.required = required


class TrainingFailure(TuningError):
    """Ошибка обучения (расхождение, NaN в лоссе и т.п.)"""


class PersistenceFailure(TuningError):
    """Ошибка записи в хранилище"""

    def __init__(self, message: str, target: str = ""):
        super().__init__(message)
        self.target = target


class AllConfigurationsFailed(TuningError):
    """Все конфигурации сетки упали или неприменимы"""

    def __init__(self, symbol: str, total: int):
        super().__init__(f"Все {total} конфигураций не прошли для {symbol}")
        self.symbol = symbol
        self.total = total


class ScalerMismatchError(TuningError):
    """Скейлеры обучены для другой пары (конфигурация, модель)"""
