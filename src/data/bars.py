"""
Серия баров одного инструмента.

Обертка над DataFrame с колонками open/high/low/close/volume/trade_count/vwap,
упорядоченными по времени. Внутренний DataFrame не отдается наружу напрямую,
поэтому серия не меняется в ходе тюнинга.
"""

from typing import Optional

import numpy as np
import pandas as pd

from src.errors import InsufficientDataError


PRICE_COLUMNS = ['open', 'high', 'low', 'close']
BAR_COLUMNS = PRICE_COLUMNS + ['volume', 'trade_count', 'vwap']


class BarSeries:
    """Неизменяемая упорядоченная по времени серия OHLCV баров"""

    def __init__(self, symbol: str, frame: pd.DataFrame):
        self.symbol = symbol
        self._frame = self._prepare(frame)
        self._arrays = {}
        for col in BAR_COLUMNS:
            values = self._frame[col].to_numpy(dtype=np.float64).copy()
            values.setflags(write=False)
            self._arrays[col] = values

    @staticmethod
    def _prepare(frame: pd.DataFrame) -> pd.DataFrame:
        """Проверка колонок, сортировка по времени, дополнение trade_count/vwap"""
        missing = [c for c in PRICE_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"Отсутствуют колонки: {missing}")

        df = frame.copy()
        if isinstance(df.index, pd.DatetimeIndex):
            if not df.index.is_monotonic_increasing:
                df = df.sort_index(kind='mergesort')
            if df.index.has_duplicates:
                raise ValueError("Дублирующиеся временные метки в серии")

        if 'volume' not in df.columns:
            df['volume'] = 0.0
        if 'trade_count' not in df.columns:
            df['trade_count'] = 0.0
        if 'vwap' not in df.columns:
            # Типичная цена как приближение VWAP
            df['vwap'] = (df['high'] + df['low'] + df['close']) / 3.0

        df = df[BAR_COLUMNS].astype('float64')

        if df[PRICE_COLUMNS].isna().any().any():
            raise ValueError(f"Обнаружены NaN цены: {int(df[PRICE_COLUMNS].isna().sum().sum())} шт.")
        if (df['close'] <= 0).any():
            raise ValueError("Обнаружены нулевые или отрицательные цены")

        df[['volume', 'trade_count']] = df[['volume', 'trade_count']].fillna(0.0)
        df['vwap'] = df['vwap'].fillna(df['close'])
        return df

    @classmethod
    def from_arrays(cls, symbol: str, close: np.ndarray,
                    high: Optional[np.ndarray] = None,
                    low: Optional[np.ndarray] = None,
                    open_: Optional[np.ndarray] = None,
                    volume: Optional[np.ndarray] = None,
                    start: str = "2020-01-01",
                    freq: str = "D") -> "BarSeries":
        """Серия из массивов (пропущенные цены достраиваются из close)"""
        close = np.asarray(close, dtype=np.float64)
        frame = pd.DataFrame({
            'open': close if open_ is None else open_,
            'high': close if high is None else high,
            'low': close if low is None else low,
            'close': close,
            'volume': np.zeros(len(close)) if volume is None else volume,
        }, index=pd.date_range(start=start, periods=len(close), freq=freq))
        return cls(symbol, frame)

    def __len__(self) -> int:
        return len(self._frame)

    def __repr__(self) -> str:
        return f"BarSeries({self.symbol!r}, bars={len(self)})"

    @property
    def index(self) -> pd.Index:
        return self._frame.index

    @property
    def close(self) -> np.ndarray:
        return self._arrays['close']

    @property
    def high(self) -> np.ndarray:
        return self._arrays['high']

    @property
    def low(self) -> np.ndarray:
        return self._arrays['low']

    def column(self, name: str) -> np.ndarray:
        """Колонка как read-only массив"""
        return self._arrays[name]

    def to_frame(self) -> pd.DataFrame:
        """Копия данных (изменения копии не затрагивают серию)"""
        return self._frame.copy()

    def head(self, n: int) -> "BarSeries":
        """Префикс из первых n баров (обучающая часть сплита)"""
        if n < 1 or n > len(self):
            raise InsufficientDataError(
                f"Префикс {n} баров вне диапазона серии {self.symbol} ({len(self)})",
                series_length=len(self),
                required=n
            )
        if n == len(self):
            return self
        return BarSeries(self.symbol, self._frame.iloc[:n])
