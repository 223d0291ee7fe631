"""
Бизнес-скор конфигурации и правило выбора лучшей.

    score = max(expectancy, 0) * min(pf, cap) * win_rate / (1 + dd^gamma + eps)

Бесконечный или NaN profit factor (нет убыточных сделок) считается равным cap.
"""

import math
from typing import Optional, Tuple

from src.backtesting.tester import TradingMetrics


EPSILON = 1e-9


def clamp_profit_factor(profit_factor: float, cap: float) -> float:
    if profit_factor is None or math.isnan(profit_factor) or math.isinf(profit_factor):
        return cap
    return min(profit_factor, cap)


def business_score(expectancy: float,
                   profit_factor: float,
                   win_rate: float,
                   max_drawdown_pct: float,
                   cap: float = 3.0,
                   gamma: float = 1.2,
                   epsilon: float = EPSILON) -> float:
    """Скаляр для ранжирования конфигураций (больше - лучше)"""
    pf = clamp_profit_factor(profit_factor, cap)
    drawdown = max(max_drawdown_pct, 0.0)
    numerator = max(expectancy, 0.0) * pf * win_rate
    return numerator / (1.0 + drawdown ** gamma + epsilon)


def score_metrics(metrics: TradingMetrics, cap: float, gamma: float,
                  epsilon: float = EPSILON) -> float:
    return business_score(metrics.expectancy, metrics.profit_factor, metrics.win_rate,
                          metrics.max_drawdown_pct, cap, gamma, epsilon)


def is_eligible(score: Optional[float]) -> bool:
    """NaN/inf скор не участвует в выборе"""
    return score is not None and math.isfinite(score)


def ranking_key(score: float, mean_mse: float, grid_index: int) -> Tuple[float, float, int]:
    """Ключ сортировки: больше - лучше (скор, затем меньший MSE, затем ранняя позиция)"""
    mse = mean_mse if mean_mse is not None and math.isfinite(mean_mse) else math.inf
    return (score, -mse, -grid_index)


def is_better(candidate: Tuple[float, float, int], incumbent: Optional[Tuple[float, float, int]]) -> bool:
    return incumbent is None or candidate > incumbent
