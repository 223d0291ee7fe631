"""
Генерация сетки конфигураций LSTM.

    - generate_grid: декартово произведение осей (порядок осей и значений сохраняется)
    - generate_random_grid: n независимых выборок по осям под seed вызывающего
    - generate_optimized_grid: exploitation / exploration / innovation (40/40/20)
    - generate_swing_trade_grid: сетка по умолчанию из HYPERPARAMS.grid
    - generate_micro_grid: вариации вокруг лучших конфигураций (вторая фаза)

Все функции чистые: одинаковые аргументы дают одинаковую сетку.
"""

import itertools
import math
from dataclasses import fields
from typing import Dict, List, Optional, Sequence

import numpy as np

from config.hyperparameters import HYPERPARAMS, GridDefaults
from src.errors import ConfigurationError
from src.models.lstm_config import LstmConfig


GRID_AXES = tuple(f.name for f in fields(LstmConfig))


def _check_axes(axes: Dict[str, Sequence]) -> None:
    if not axes:
        raise ConfigurationError("Сетка без осей")
    for name, values in axes.items():
        if name not in GRID_AXES:
            raise ConfigurationError(f"Неизвестная ось сетки: {name}")
        if values is None or len(values) == 0:
            raise ConfigurationError(f"Пустая ось сетки: {name}")


def _build(base: LstmConfig, changes: Dict) -> LstmConfig:
    try:
        return base.with_updates(**changes)
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Некорректные значения осей {changes}: {e}")


def generate_grid(axes: Dict[str, Sequence], base: Optional[LstmConfig] = None) -> List[LstmConfig]:
    """
    Декартово произведение осей.

    Args:
        axes: {имя поля LstmConfig: список значений}; признаки задаются
            списком вариантов, каждый вариант - последовательность имен
        base: Конфигурация для полей вне осей

    Returns:
        Список длиной prod(len(axis)), последняя ось меняется быстрее всех

    Raises:
        ConfigurationError: Пустая или неизвестная ось
    """
    _check_axes(axes)
    base = base or LstmConfig()
    names = list(axes)
    return [_build(base, dict(zip(names, combo)))
            for combo in itertools.product(*(axes[n] for n in names))]


def generate_random_grid(axes: Dict[str, Sequence], n: int, seed: int,
                         base: Optional[LstmConfig] = None) -> List[LstmConfig]:
    """n конфигураций, каждая ось выбирается независимо и равномерно"""
    if n < 1:
        raise ConfigurationError(f"Размер выборки должен быть >= 1, получено {n}")
    _check_axes(axes)
    base = base or LstmConfig()
    rng = np.random.default_rng(seed)

    grid = []
    for _ in range(n):
        changes = {name: values[int(rng.integers(len(values)))] for name, values in axes.items()}
        grid.append(_build(base, changes))
    return grid


def axes_from_defaults(defaults: Optional[GridDefaults] = None) -> Dict[str, List]:
    defaults = defaults or HYPERPARAMS.grid
    return {
        'window_size': list(defaults.window_size),
        'hidden_units': list(defaults.hidden_units),
        'dropout': list(defaults.dropout),
        'learning_rate': list(defaults.learning_rate),
        'l1': list(defaults.l1),
        'l2': list(defaults.l2),
        'num_layers': list(defaults.num_layers),
        'horizon_bars': list(defaults.horizon_bars),
        'swing_trade_type': list(defaults.swing_trade_type),
    }


def generate_swing_trade_grid(defaults: Optional[GridDefaults] = None,
                              base: Optional[LstmConfig] = None) -> List[LstmConfig]:
    """Сетка по умолчанию: полный перебор или выборка при random_samples > 0"""
    defaults = defaults or HYPERPARAMS.grid
    axes = axes_from_defaults(defaults)
    if defaults.random_samples > 0:
        return generate_random_grid(axes, defaults.random_samples, defaults.seed, base)
    return generate_grid(axes, base)


# =============================================================================
# ОПТИМИЗИРОВАННАЯ СЛУЧАЙНАЯ СЕТКА
# =============================================================================

def _log_uniform(rng: np.random.Generator, low: float, high: float) -> float:
    return round(math.exp(rng.uniform(math.log(low), math.log(high))), 9)


def _choice(rng: np.random.Generator, options: Sequence):
    return options[int(rng.integers(len(options)))]


def _pick_weighted(rng: np.random.Generator, options: Sequence[str], p_first: float) -> str:
    if len(options) == 1 or rng.random() < p_first:
        return options[0]
    return options[1 + int(rng.integers(len(options) - 1))]


def _architecture_flags(rng: np.random.Generator) -> Dict[str, bool]:
    attention = rng.random() < 0.10
    bidirectional = (not attention) and rng.random() < 0.10
    return {'attention': attention, 'bidirectional': bidirectional}


def _exploit(rng: np.random.Generator) -> Dict:
    return dict(
        window_size=_choice(rng, [30, 35, 45, 55]),
        hidden_units=_choice(rng, [64, 96, 128]),
        num_layers=2 if rng.random() < 0.55 else 1,
        dropout=_choice(rng, [0.12, 0.15, 0.18, 0.20]),
        learning_rate=_log_uniform(rng, 2e-4, 8e-4),
        l2=_log_uniform(rng, 5e-5, 4e-4),
        horizon_bars=_choice(rng, [7, 9, 12]),
        num_epochs=100 + int(rng.integers(21)),
        patience=5 + int(rng.integers(4)),
        min_delta=0.00018,
        batch_size=_choice(rng, [48, 64]),
        swing_trade_type=_pick_weighted(rng, ["range", "mean_reversion"], 0.6),
        profit_factor_cap=4.5,
        drawdown_gamma=1.4,
        walk_forward_splits=4 + int(rng.integers(2)),
        **_architecture_flags(rng)
    )


def _explore(rng: np.random.Generator) -> Dict:
    return dict(
        window_size=_choice(rng, [18, 25, 30, 45, 60]),
        hidden_units=_choice(rng, [64, 96, 128, 160]),
        num_layers=_choice(rng, [1, 2]),
        dropout=round(0.10 + rng.random() * 0.10, 9),
        learning_rate=_log_uniform(rng, 2e-4, 1.8e-3),
        l2=_log_uniform(rng, 1e-5, 1e-3),
        horizon_bars=_choice(rng, [5, 7, 9, 12, 15]),
        num_epochs=40 + int(rng.integers(21)),
        patience=5 + int(rng.integers(4)),
        min_delta=0.00022,
        batch_size=_choice(rng, [32, 48, 64]),
        swing_trade_type=_pick_weighted(rng, ["range", "breakout", "mean_reversion"], 0.34),
        profit_factor_cap=5.0,
        drawdown_gamma=1.3,
        walk_forward_splits=4 + int(rng.integers(2)),
        **_architecture_flags(rng)
    )


def _innovate(rng: np.random.Generator) -> Dict:
    return dict(
        window_size=_choice(rng, [15, 30, 60]),
        hidden_units=_choice(rng, [32, 128]),
        num_layers=1,
        dropout=_choice(rng, [0.08, 0.12, 0.18]),
        learning_rate=_log_uniform(rng, 1.5e-4, 2.0e-3),
        l2=_log_uniform(rng, 1e-5, 1e-3),
        horizon_bars=_choice(rng, [9, 12, 15]),
        num_epochs=40 + int(rng.integers(21)),
        patience=5 + int(rng.integers(4)),
        min_delta=0.00028,
        batch_size=_choice(rng, [48, 64]),
        swing_trade_type=_pick_weighted(rng, ["breakout", "mean_reversion"], 0.5),
        profit_factor_cap=5.0,
        drawdown_gamma=1.2,
        walk_forward_splits=4 + int(rng.integers(2)),
        **_architecture_flags(rng)
    )


def split_budget(n: int) -> Dict[str, int]:
    """Распределение 40/40/20 с минимумом 1 на категорию"""
    n = max(n, 3)
    exploit = max(1, int(round(n * 0.4)))
    explore = max(1, int(round(n * 0.4)))
    innovate = n - exploit - explore
    if innovate < 1:
        innovate = 1
        if explore > exploit:
            explore -= 1
        else:
            exploit -= 1
    return {'exploit': exploit, 'explore': explore, 'innovate': innovate}


def generate_optimized_grid(n: int, seed: int, base: Optional[LstmConfig] = None) -> List[LstmConfig]:
    """
    Случайная сетка для малого бюджета (n ~ 50).

    Часть конфигураций сосредоточена в зоне, которая обычно работает
    (exploitation), часть покрывает структурное разнообразие (exploration),
    остальные - смелые варианты (innovation). LR и L2 тянутся лог-равномерно.
    Порядок перемешивается, seed конфигураций = seed + позиция.
    """
    if n < 1:
        raise ConfigurationError(f"Размер сетки должен быть >= 1, получено {n}")
    base = base or LstmConfig()
    rng = np.random.default_rng(seed)
    budget = split_budget(n)

    drafts = ([_exploit(rng) for _ in range(budget['exploit'])]
              + [_explore(rng) for _ in range(budget['explore'])]
              + [_innovate(rng) for _ in range(budget['innovate'])])
    order = rng.permutation(len(drafts))

    return [_build(base, dict(drafts[j], seed=seed + i, cv_mode="split"))
            for i, j in enumerate(order)]


# =============================================================================
# МИКРО-СЕТКА (ВТОРАЯ ФАЗА)
# =============================================================================

MICRO_HIDDEN_DELTAS = (-16, 0, 16)
MICRO_LR_FACTORS = (0.9, 1.0, 1.15)
MICRO_DROPOUT_DELTAS = (-0.05, 0.0, 0.04)


def generate_micro_grid(top: Sequence[LstmConfig],
                        exclude: Sequence[LstmConfig] = ()) -> List[LstmConfig]:
    """
    Локальные вариации вокруг лучших конфигураций первой фазы.

    Для каждой базы: hidden_units +-16 (в [16, 512]), learning_rate * {0.9, 1, 1.15}
    (в [1e-5, 0.02]), dropout {-0.05, 0, +0.04} (в [0.05, 0.40]).
    Повторы и уже проверенные конфигурации (exclude) отбрасываются.
    """
    seen = {c.fingerprint() for c in exclude}
    grid = []
    for base in top:
        for dh in MICRO_HIDDEN_DELTAS:
            hidden = base.hidden_units + dh
            if hidden < 16 or hidden > 512:
                continue
            for factor in MICRO_LR_FACTORS:
                lr = min(max(base.learning_rate * factor, 1e-5), 0.02)
                for dd in MICRO_DROPOUT_DELTAS:
                    dropout = round(min(max(base.dropout + dd, 0.05), 0.40), 4)
                    config = _build(base, {'hidden_units': hidden, 'learning_rate': lr,
                                           'dropout': dropout})
                    key = config.fingerprint()
                    if key not in seen:
                        seen.add(key)
                        grid.append(config)
    return grid
