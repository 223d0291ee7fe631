"""
Feature Engineering для LSTM-тюнера.

Каждое имя признака из конфигурации превращается в числовую колонку
той же длины, что и серия баров. Все индикаторы каузальны: значение на
баре t зависит только от баров <= t, поэтому признаки можно считать один
раз на всей серии и резать по сплитам без утечки будущего.

Прогревочные бары (меньше периода индикатора) считаются по неполному окну
(min_periods=1), оставшиеся NaN заменяются нейтральными значениями.
"""

from typing import Callable, Dict, List, Sequence

import numpy as np
import pandas as pd

from src.data.bars import BarSeries
from src.errors import ConfigurationError


# Осцилляторы и доходности нормализуются z-score, цены и объемы min-max
ZSCORE_FEATURES = {
    'rsi', 'rsi_14', 'rsi_21', 'momentum', 'roc', 'macd', 'macd_signal',
    'macd_histogram', 'cci', 'stochastic', 'stochastic_d', 'williams_r',
    'log_return', 'volume_ratio', 'price_position', 'bollinger_width',
}


# =============================================================================
# БАЗОВЫЕ ИНДИКАТОРЫ
# =============================================================================

def true_range(df: pd.DataFrame) -> pd.Series:
    """TR (True Range) классический"""
    prev_close = df['close'].shift(1)
    h_l = df['high'] - df['low']
    h_pc = (df['high'] - prev_close).abs()
    l_pc = (df['low'] - prev_close).abs()
    return pd.concat([h_l, h_pc, l_pc], axis=1).max(axis=1)


def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    """ATR как скользящее среднее TR"""
    return true_range(df).rolling(period, min_periods=1).mean()


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """RSI в диапазоне [0, 100]"""
    delta = close.diff()
    gain = delta.where(delta > 0, 0.0).rolling(period, min_periods=1).mean()
    loss = (-delta.where(delta < 0, 0.0)).rolling(period, min_periods=1).mean()
    rs = gain / loss.replace(0, np.nan)
    out = 100 - (100 / (1 + rs))
    # Нет убытков в окне => максимальная сила, нет движения => нейтраль
    out = out.where(loss != 0, np.where(gain > 0, 100.0, 50.0))
    return out.fillna(50.0)


def sma(close: pd.Series, period: int) -> pd.Series:
    return close.rolling(period, min_periods=1).mean()


def ema(close: pd.Series, span: int) -> pd.Series:
    return close.ewm(span=span, adjust=False).mean()


def _macd_parts(close: pd.Series):
    macd_line = ema(close, 12) - ema(close, 26)
    signal = macd_line.ewm(span=9, adjust=False).mean()
    return macd_line, signal, macd_line - signal


def _bollinger(close: pd.Series, period: int = 20):
    mid = sma(close, period)
    std = close.rolling(period, min_periods=1).std().fillna(0.0)
    return mid + 2 * std, mid - 2 * std, mid


def _stochastic_k(df: pd.DataFrame, period: int = 14) -> pd.Series:
    lowest = df['low'].rolling(period, min_periods=1).min()
    highest = df['high'].rolling(period, min_periods=1).max()
    rng = (highest - lowest).replace(0, np.nan)
    return ((df['close'] - lowest) / rng * 100).fillna(50.0)


def _cci(df: pd.DataFrame, period: int = 20) -> pd.Series:
    tp = (df['high'] + df['low'] + df['close']) / 3.0
    mean = tp.rolling(period, min_periods=1).mean()
    mad = tp.rolling(period, min_periods=1).apply(lambda x: np.abs(x - x.mean()).mean(), raw=True)
    return ((tp - mean) / (0.015 * mad.replace(0, np.nan))).fillna(0.0)


def _obv(df: pd.DataFrame) -> pd.Series:
    direction = np.sign(df['close'].diff().fillna(0.0))
    return (direction * df['volume']).cumsum()


def _time_index(df: pd.DataFrame) -> pd.DatetimeIndex:
    if not isinstance(df.index, pd.DatetimeIndex):
        raise ConfigurationError("Календарные признаки требуют DatetimeIndex у серии")
    return df.index


# =============================================================================
# РЕЕСТР ПРИЗНАКОВ
# =============================================================================

def _bollinger_width(df: pd.DataFrame) -> pd.Series:
    upper, lower, mid = _bollinger(df['close'])
    return (upper - lower) / mid


def _price_position(df: pd.DataFrame, period: int = 20) -> pd.Series:
    lowest = df['low'].rolling(period, min_periods=1).min()
    highest = df['high'].rolling(period, min_periods=1).max()
    return ((df['close'] - lowest) / (highest - lowest).replace(0, np.nan)).fillna(0.5)


def _volatility_regime(df: pd.DataFrame) -> pd.Series:
    log_ret = np.log(df['close'] / df['close'].shift(1)).fillna(0.0)
    short = log_ret.rolling(10, min_periods=1).std().fillna(0.0)
    long = log_ret.rolling(50, min_periods=1).std().replace(0, np.nan)
    return (short / long).fillna(1.0)


FEATURE_REGISTRY: Dict[str, Callable[[pd.DataFrame], pd.Series]] = {
    'open': lambda df: df['open'],
    'high': lambda df: df['high'],
    'low': lambda df: df['low'],
    'close': lambda df: df['close'],
    'volume': lambda df: df['volume'],
    'trade_count': lambda df: df['trade_count'],
    'vwap': lambda df: df['vwap'],

    'rsi': lambda df: rsi(df['close'], 14),
    'rsi_14': lambda df: rsi(df['close'], 14),
    'rsi_21': lambda df: rsi(df['close'], 21),

    'sma': lambda df: sma(df['close'], 14),
    'sma_20': lambda df: sma(df['close'], 20),
    'sma_50': lambda df: sma(df['close'], 50),
    'ema': lambda df: ema(df['close'], 14),
    'ema_12': lambda df: ema(df['close'], 12),
    'ema_26': lambda df: ema(df['close'], 26),
    'ema_50': lambda df: ema(df['close'], 50),

    'macd': lambda df: _macd_parts(df['close'])[0],
    'macd_signal': lambda df: _macd_parts(df['close'])[1],
    'macd_histogram': lambda df: _macd_parts(df['close'])[2],

    'atr': lambda df: atr(df, 14),
    'atr_14': lambda df: atr(df, 14),
    'atr_21': lambda df: atr(df, 21),

    'bollinger_high': lambda df: _bollinger(df['close'])[0],
    'bollinger_low': lambda df: _bollinger(df['close'])[1],
    'bollinger_width': _bollinger_width,

    'stochastic': lambda df: _stochastic_k(df),
    'stochastic_d': lambda df: _stochastic_k(df).rolling(3, min_periods=1).mean(),
    'williams_r': lambda df: _stochastic_k(df) - 100.0,
    'cci': lambda df: _cci(df),
    'momentum': lambda df: (df['close'] - df['close'].shift(10)).fillna(0.0),
    'roc': lambda df: df['close'].pct_change(10).fillna(0.0) * 100,
    'log_return': lambda df: np.log(df['close'] / df['close'].shift(1)).fillna(0.0),

    'obv': _obv,
    'volume_ratio': lambda df: (df['volume'] / df['volume'].rolling(20, min_periods=1).mean()
                                .replace(0, np.nan)).fillna(1.0),
    'price_position': _price_position,
    'volatility_regime': _volatility_regime,

    'day_of_week': lambda df: pd.Series(_time_index(df).dayofweek, index=df.index, dtype=float),
    'month': lambda df: pd.Series(_time_index(df).month, index=df.index, dtype=float),
    'quarter': lambda df: pd.Series(_time_index(df).quarter, index=df.index, dtype=float),
}


def get_feature_names() -> List[str]:
    """Все поддерживаемые имена признаков"""
    return sorted(FEATURE_REGISTRY)


def get_feature_normalization(name: str) -> str:
    """'zscore' для осцилляторов, 'minmax' для цен/объемов/календаря"""
    return 'zscore' if name in ZSCORE_FEATURES else 'minmax'


def validate_feature_names(features: Sequence[str]) -> None:
    unknown = [f for f in features if f not in FEATURE_REGISTRY]
    if unknown:
        raise ConfigurationError(f"Неизвестные признаки: {unknown}")


def build_feature_frame(series: BarSeries, features: Sequence[str]) -> pd.DataFrame:
    """
    Расчет запрошенных признаков в заданном порядке.

    Args:
        series: Серия баров
        features: Упорядоченный список имен признаков

    Returns:
        pd.DataFrame: len(series) строк, колонки в порядке features

    Raises:
        ConfigurationError: Неизвестный признак
    """
    validate_feature_names(features)
    df = series.to_frame()

    columns = {}
    for name in features:
        values = FEATURE_REGISTRY[name](df)
        columns[name] = pd.Series(values, index=df.index).astype('float64')

    result = pd.DataFrame(columns, index=df.index)
    result = result.replace([np.inf, -np.inf], np.nan).ffill().fillna(0.0)
    return result


def build_feature_matrix(series: BarSeries, features: Sequence[str]) -> np.ndarray:
    """Матрица признаков (n_bars, n_features) в float64"""
    return build_feature_frame(series, features).to_numpy(dtype=np.float64)
