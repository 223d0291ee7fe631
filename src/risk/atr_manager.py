import numpy as np
import pandas as pd
from typing import Optional

from src.data.bars import BarSeries
from src.features.engineering import atr as rolling_atr


def calculate_atr(data: pd.DataFrame, period: int = 14) -> pd.Series:
    return rolling_atr(data, period)


class ATRRiskManager:
    """Стоп-дистанции от ATR и порог входа от волатильности"""

    def __init__(
        self,
        atr_period: int = 14,
        threshold_min: float = 0.001,
        threshold_max: float = 0.01
    ):
        self.atr_period = atr_period
        self.threshold_min = threshold_min
        self.threshold_max = threshold_max

    @classmethod
    def from_trading_config(cls, trading) -> "ATRRiskManager":
        return cls(
            atr_period=trading.atr_period,
            threshold_min=trading.threshold_min,
            threshold_max=trading.threshold_max
        )

    def atr_series(self, series: BarSeries) -> np.ndarray:
        return calculate_atr(series.to_frame(), self.atr_period).to_numpy(dtype=np.float64)

    def stop_distances(self, close: np.ndarray, atr_values: np.ndarray) -> np.ndarray:
        # Без валидного ATR стоп ставится в 1% от цены
        fallback = close * 0.01
        valid = np.isfinite(atr_values) & (atr_values > 0)
        return np.where(valid, atr_values, fallback)

    def swing_threshold(self, history: BarSeries, threshold_type: str, k: float,
                        atr_values: Optional[np.ndarray] = None) -> float:
        """
        Относительный порог |pred - close| / close для открытия позиции.

        ATR: k * ATR / close на последнем баре истории
        returns: k * std лог-доходностей истории

        Результат ограничен [threshold_min, threshold_max].
        """
        close = history.close
        if threshold_type == 'ATR':
            if atr_values is None:
                atr_values = self.atr_series(history)
            last_atr = atr_values[len(close) - 1]
            raw = k * last_atr / close[-1] if close[-1] > 0 else np.nan
        else:
            log_ret = np.diff(np.log(close))
            raw = k * float(np.std(log_ret)) if len(log_ret) > 1 else np.nan

        if not np.isfinite(raw):
            raw = self.threshold_min
        return float(np.clip(raw, self.threshold_min, self.threshold_max))
