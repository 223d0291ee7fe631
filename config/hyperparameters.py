"""
Централизованное хранилище всех параметров движка тюнинга.
Разделено на секции для удобства настройки и масштабирования.
"""

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Dict, Union

import yaml


@dataclass
class GovernorConfig:
    """Параметры параллелизма и защиты памяти"""
    max_threads: int = 0              # 0 => автоопределение по ядрам
    cpu_reserve: int = 1              # ядра, оставляемые системе
    hard_max_threads: int = 8         # потолок безопасности
    gpu_thread_cap: int = 4           # потолок при наличии GPU
    memory_threshold: float = 0.8     # доля бюджета памяти
    memory_budget_bytes: int = 0      # 0 => вся физическая память
    poll_interval_s: float = 5.0
    gpu_max_concurrency: int = 3      # одновременные обучения на GPU
    max_parallel_symbols: int = 1     # инструменты, тюнингуемые одновременно


@dataclass
class WalkForwardSettings:
    """Параметры Walk-Forward оценки"""
    retrain_per_split: bool = False   # False => одна модель на всю историю
    min_test_bars: int = 5            # минимум баров в тестовом окне
    oos_fraction: float = 0.2         # доля серии под out-of-sample сплиты
    retrain_full_for_persistence: bool = False  # лучшая модель дообучается на всей серии перед сохранением


@dataclass
class TradingConfig:
    """Параметры симуляции сделок"""
    capital: float = 10000.0
    risk_pct: float = 0.01
    fee_pct: float = 0.0005
    slippage_pct: float = 0.0002
    atr_period: int = 14
    threshold_min: float = 0.001
    threshold_max: float = 0.01


@dataclass
class ScoringConfig:
    """Бизнес-скор (cap и gamma задаются в каждой LstmConfig)"""
    epsilon: float = 1e-9             # стабилизатор знаменателя


@dataclass
class TwoPhaseConfig:
    """Двухфазный тюнинг: грубая сетка, микро-сетка вокруг лучших, hold-out"""
    enabled: bool = False
    holdout_fraction: float = 0.10    # доля хвоста серии, скрытая от обеих фаз
    min_holdout_bars: int = 200
    holdout_margin_bars: int = 60     # hold-out включается, если до него > window + margin баров
    top_n: int = 5                    # лучшие конфигурации фазы 1 для микро-сетки
    min_relative_gain: float = 0.05   # фаза 2 принимается при росте скора >= 5%
    min_absolute_gain: float = 0.02


@dataclass
class GpuBatchConfig:
    """Авто-масштабирование batch на GPU"""
    auto_batch_scale: bool = True
    target_batch_size: int = 128
    scale_learning_rate: bool = True


@dataclass
class PersistenceConfig:
    """Хранилища гиперпараметров и моделей"""
    models_dir: str = ""              # пусто => PATHS.MODELS_DIR
    write_progress_metrics: bool = True


@dataclass
class MonitoringConfig:
    """Heartbeat-логирование прогресса"""
    heartbeat_enabled: bool = True
    heartbeat_interval_s: float = 30.0


@dataclass
class GridDefaults:
    """Оси сетки гиперпараметров (swing trade)"""
    window_size: List[int] = field(default_factory=lambda: [20, 30, 40])
    hidden_units: List[int] = field(default_factory=lambda: [64, 128])
    dropout: List[float] = field(default_factory=lambda: [0.2, 0.25])
    learning_rate: List[float] = field(default_factory=lambda: [0.0005, 0.001])
    l1: List[float] = field(default_factory=lambda: [0.0])
    l2: List[float] = field(default_factory=lambda: [0.0001, 0.001])
    num_layers: List[int] = field(default_factory=lambda: [1, 2])
    horizon_bars: List[int] = field(default_factory=lambda: [5])
    swing_trade_type: List[str] = field(default_factory=lambda: ["range", "mean_reversion"])
    random_samples: int = 0           # >0 => случайная выборка вместо полного перебора
    seed: int = 42


class HyperParameters:
    """Главный класс-контейнер всех конфигураций"""

    def __init__(self):
        self.governor = GovernorConfig()
        self.walk_forward = WalkForwardSettings()
        self.trading = TradingConfig()
        self.scoring = ScoringConfig()
        self.two_phase = TwoPhaseConfig()
        self.gpu_batch = GpuBatchConfig()
        self.persistence = PersistenceConfig()
        self.monitoring = MonitoringConfig()
        self.grid = GridDefaults()

        self._validate_params()

    def _validate_params(self) -> None:
        """Валидация взаимосвязей между параметрами"""
        try:
            assert 0 < self.governor.memory_threshold <= 1.0, \
                "memory_threshold должен быть в интервале (0, 1]"

            assert self.governor.hard_max_threads >= 1, \
                "hard_max_threads должен быть >= 1"

            assert self.governor.poll_interval_s > 0, \
                "poll_interval_s должен быть > 0"

            assert self.governor.max_parallel_symbols >= 1, \
                "max_parallel_symbols должен быть >= 1"

            assert 0 < self.walk_forward.oos_fraction < 1, \
                "oos_fraction должен быть в интервале (0, 1)"

            assert self.trading.threshold_max >= self.trading.threshold_min > 0, \
                "threshold_max должен быть >= threshold_min > 0"

            assert self.scoring.epsilon > 0, \
                "epsilon должен быть > 0"

            assert 0 < self.two_phase.holdout_fraction < 0.5, \
                "holdout_fraction должен быть в интервале (0, 0.5)"

            assert self.two_phase.top_n >= 1, \
                "top_n должен быть >= 1"

        except AssertionError as e:
            raise ValueError(f"Ошибка валидации параметров: {e}")

    def to_dict(self) -> Dict:
        """Сериализация всех параметров в словарь"""
        return {
            "governor": asdict(self.governor),
            "walk_forward": asdict(self.walk_forward),
            "trading": asdict(self.trading),
            "scoring": asdict(self.scoring),
            "two_phase": asdict(self.two_phase),
            "gpu_batch": asdict(self.gpu_batch),
            "persistence": asdict(self.persistence),
            "monitoring": asdict(self.monitoring),
            "grid": asdict(self.grid)
        }

    def update_from_dict(self, config_dict: Dict) -> None:
        """Обновление параметров из словаря (для экспериментов)"""
        for section, params in (config_dict or {}).items():
            if hasattr(self, section) and isinstance(params, dict):
                config_obj = getattr(self, section)
                for key, value in params.items():
                    if hasattr(config_obj, key):
                        setattr(config_obj, key, value)
        self._validate_params()


def load_from_yaml(path: Union[str, Path]) -> HyperParameters:
    """Новый контейнер параметров, дополненный секциями из YAML"""
    with open(path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f) or {}

    params = HyperParameters()
    params.update_from_dict(raw)
    return params


# Глобальный экземпляр параметров
HYPERPARAMS = HyperParameters()
