"""
Конфигурация LSTM-модели (одна точка сетки гиперпараметров).

Конфигурация неизменяема: оркестратор раздает один и тот же объект
нескольким потокам, а хранилища сериализуют ее в JSON.
"""

import hashlib
import json
from dataclasses import dataclass, field, asdict, fields, replace
from typing import Dict, Tuple, Any

from src.errors import ConfigurationError, InsufficientDataError
from src.features.engineering import validate_feature_names


OPTIMIZERS = ("adam", "adamw", "sgd", "rmsprop")
SWING_TRADE_TYPES = ("range", "breakout", "mean_reversion")
NORMALIZATION_METHODS = ("auto", "minmax", "zscore")
THRESHOLD_TYPES = ("ATR", "returns")
CV_MODES = ("split", "timeseries")

DEFAULT_FEATURES = (
    "close", "volume", "high", "low", "open",
    "rsi", "sma", "ema_12", "macd", "atr",
    "momentum", "roc", "bollinger_width", "volume_ratio",
)


@dataclass(frozen=True)
class LstmConfig:
    """Гиперпараметры одной модели и параметры ее оценки"""

    # Архитектура
    window_size: int = 20
    hidden_units: int = 64
    num_layers: int = 2
    dropout: float = 0.2
    bidirectional: bool = False
    attention: bool = False

    # Обучение
    learning_rate: float = 0.001
    l1: float = 0.0
    l2: float = 0.0001
    optimizer: str = "adam"
    batch_size: int = 32
    num_epochs: int = 50
    patience: int = 5
    min_delta: float = 1e-4
    cv_mode: str = "split"
    k_folds: int = 5
    seed: int = 42

    # Данные и цель
    features: Tuple[str, ...] = field(default_factory=lambda: DEFAULT_FEATURES)
    horizon_bars: int = 5
    swing_trade_type: str = "range"
    normalization_method: str = "auto"

    # Торговое правило и оценка
    threshold_type: str = "ATR"
    threshold_k: float = 1.0
    walk_forward_splits: int = 4
    embargo_bars: int = 0
    profit_factor_cap: float = 3.0
    drawdown_gamma: float = 1.2

    def __post_init__(self):
        # Списки из JSON/YAML приводим к кортежу, чтобы объект оставался хешируемым
        if not isinstance(self.features, tuple):
            object.__setattr__(self, "features", tuple(self.features))
        self._validate()

    def _validate(self) -> None:
        """Проверка инвариантов конфигурации"""
        try:
            assert self.window_size >= 1, "window_size должен быть >= 1"
            assert self.hidden_units >= 1, "hidden_units должен быть >= 1"
            assert self.num_layers >= 1, "num_layers должен быть >= 1"
            assert 0.0 <= self.dropout < 1.0, "dropout должен быть в [0, 1)"
            assert self.learning_rate > 0, "learning_rate должен быть > 0"
            assert self.l1 >= 0 and self.l2 >= 0, "l1/l2 должны быть >= 0"
            assert self.optimizer in OPTIMIZERS, f"неизвестный optimizer: {self.optimizer}"
            assert self.batch_size >= 1, "batch_size должен быть >= 1"
            assert self.num_epochs >= 1, "num_epochs должен быть >= 1"
            assert self.patience >= 0, "patience должен быть >= 0"
            assert self.cv_mode in CV_MODES, f"неизвестный cv_mode: {self.cv_mode}"
            assert self.k_folds >= 2, "k_folds должен быть >= 2"
            assert len(self.features) > 0, "список признаков пуст"
            assert len(set(self.features)) == len(self.features), "признаки повторяются"
            assert self.horizon_bars >= 1, "horizon_bars должен быть >= 1"
            assert self.swing_trade_type in SWING_TRADE_TYPES, \
                f"неизвестный swing_trade_type: {self.swing_trade_type}"
            assert self.normalization_method in NORMALIZATION_METHODS, \
                f"неизвестный normalization_method: {self.normalization_method}"
            assert self.threshold_type in THRESHOLD_TYPES, \
                f"неизвестный threshold_type: {self.threshold_type}"
            assert self.threshold_k > 0, "threshold_k должен быть > 0"
            assert self.walk_forward_splits >= 1, "walk_forward_splits должен быть >= 1"
            assert self.embargo_bars >= 0, "embargo_bars должен быть >= 0"
            assert self.profit_factor_cap > 0, "profit_factor_cap должен быть > 0"
            assert self.drawdown_gamma > 0, "drawdown_gamma должен быть > 0"
        except AssertionError as e:
            raise ConfigurationError(f"Некорректная конфигурация: {e}")
        validate_feature_names(self.features)

    @property
    def label_normalization(self) -> str:
        """Метод нормализации метки с учетом режима auto"""
        if self.normalization_method != "auto":
            return self.normalization_method
        return "zscore" if self.swing_trade_type == "mean_reversion" else "minmax"

    def require_series_length(self, series_length: int) -> None:
        """Быстрый отказ, если серия короче окна с эмбарго"""
        required = self.window_size + self.embargo_bars + 1
        if series_length < required:
            raise InsufficientDataError(
                f"Серия из {series_length} баров короче window_size + embargo_bars + 1 = {required}",
                series_length=series_length,
                required=required
            )

    def with_updates(self, **changes) -> "LstmConfig":
        """Копия с измененными полями (с повторной валидацией)"""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["features"] = list(self.features)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LstmConfig":
        """Восстановление из словаря; неизвестные ключи игнорируются"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def fingerprint(self) -> str:
        """Стабильный идентификатор конфигурации"""
        payload = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]

    def short_repr(self) -> str:
        return (f"w={self.window_size} h={self.hidden_units} L={self.num_layers} "
                f"do={self.dropout} lr={self.learning_rate} bs={self.batch_size} "
                f"hz={self.horizon_bars} {self.swing_trade_type}")
