"""
Загрузка и кэширование исторических баров

Поддержка:
    - CSV формат MT5 (разделитель ';' или пробел)
    - Стандартный CSV (time,open,high,low,close,volume[,trade_count,vwap])
    - Автоматическое определение формата
    - Кэширование серий в памяти по символу
"""

import threading
from pathlib import Path
from typing import Dict, Optional, Union, Iterable

import pandas as pd

from src.data.bars import BarSeries
from utils.logger import LOGGER


# Глобальный кэш для избежания повторной загрузки
_SERIES_CACHE: Dict[str, BarSeries] = {}
_CACHE_LOCK = threading.Lock()

_CSV_ERRORS = (ValueError, KeyError, pd.errors.ParserError)


def load_bar_series(symbol: str,
                    csv_file: Optional[Union[str, Path]] = None,
                    force_reload: bool = False) -> BarSeries:
    """
    Загрузка исторических OHLCV баров инструмента

    Args:
        symbol: Тикер инструмента
        csv_file: Путь к CSV (по умолчанию PATHS.RAW_DATA_DIR/<symbol>.csv)
        force_reload: Принудительная перезагрузка из CSV

    Returns:
        BarSeries: Серия, упорядоченная по времени

    Raises:
        FileNotFoundError: Если CSV файл не найден
        ValueError: Если данные некорректны
    """
    with _CACHE_LOCK:
        cached = _SERIES_CACHE.get(symbol)
    if cached is not None and not force_reload:
        LOGGER.debug(f"{symbol}: серия из кэша ({len(cached)} баров)")
        return cached

    if csv_file is None:
        from config.paths import PATHS
        csv_file = PATHS.get_raw_data_path(symbol)
    csv_file = Path(csv_file)

    if not csv_file.exists():
        raise FileNotFoundError(f"CSV файл не найден: {csv_file}")

    LOGGER.info(f"Загрузка баров {symbol} из {csv_file.name}")
    df = _load_csv_auto_detect(csv_file)
    series = BarSeries(symbol, df)

    with _CACHE_LOCK:
        _SERIES_CACHE[symbol] = series

    LOGGER.info(f"{symbol}: загружено {len(series)} баров ({series.index[0]} - {series.index[-1]})")
    return series


def _load_csv_auto_detect(filepath: Path) -> pd.DataFrame:
    """
    Автоматическое определение формата CSV и загрузка

    Поддерживаемые форматы:
        1. MT5 экспорт с разделителем ';'
        2. MT5 экспорт с пробелами
        3. Стандартный CSV с запятыми
    """
    # Формат 1: разделитель ';'
    try:
        df = pd.read_csv(filepath, sep=';')
        if 'Date' in df.columns and 'Close' in df.columns:
            return _normalize_mt5_format(df)
    except _CSV_ERRORS:
        pass

    # Формат 2: разделитель пробел
    try:
        df = pd.read_csv(filepath, sep=r'\s+')
        if '<DATE>' in df.columns and '<CLOSE>' in df.columns:
            return _normalize_mt5_space_format(df)
    except _CSV_ERRORS:
        pass

    # Формат 3: стандартный CSV
    try:
        df = pd.read_csv(filepath)
        df.columns = [c.lower() for c in df.columns]
        if 'time' in df.columns and 'close' in df.columns:
            df['time'] = pd.to_datetime(df['time'])
            df.set_index('time', inplace=True)
            return df
    except _CSV_ERRORS:
        pass

    raise ValueError(
        f"Не удалось определить формат файла {filepath.name}\n"
        f"Поддерживаемые форматы:\n"
        f"  1. MT5 экспорт с ';' (Date;Open;High;Low;Close;Volume)\n"
        f"  2. MT5 экспорт с пробелами (<DATE> <TIME> <OPEN> ...)\n"
        f"  3. Стандартный CSV (time,open,high,low,close,volume)"
    )


def _normalize_mt5_format(df: pd.DataFrame) -> pd.DataFrame:
    """Нормализация MT5 формата с разделителем ';'"""
    result = pd.DataFrame({
        'time': pd.to_datetime(df['Date']),
        'open': df['Open'].astype(float),
        'high': df['High'].astype(float),
        'low': df['Low'].astype(float),
        'close': df['Close'].astype(float),
    })
    if 'Volume' in df.columns:
        result['volume'] = df['Volume'].astype(float)
    result.set_index('time', inplace=True)
    return result.dropna()


def _normalize_mt5_space_format(df: pd.DataFrame) -> pd.DataFrame:
    """
    Нормализация MT5 формата с пробелами
    Формат: <DATE> <TIME> <OPEN> <HIGH> <LOW> <CLOSE> <TICKVOL>
    """
    result = pd.DataFrame({
        'time': pd.to_datetime(df['<DATE>'] + ' ' + df['<TIME>'], format='mixed'),
        'open': df['<OPEN>'].astype(float),
        'high': df['<HIGH>'].astype(float),
        'low': df['<LOW>'].astype(float),
        'close': df['<CLOSE>'].astype(float),
    })
    if '<TICKVOL>' in df.columns:
        result['volume'] = df['<TICKVOL>'].astype(float)
        result['trade_count'] = df['<TICKVOL>'].astype(float)
    result.set_index('time', inplace=True)
    return result.dropna()


def clear_cache() -> None:
    """Очистка кэша серий"""
    with _CACHE_LOCK:
        _SERIES_CACHE.clear()


class CsvSeriesProvider:
    """Поставщик серий из директории с CSV (<symbol>.csv)"""

    def __init__(self, raw_dir: Optional[Union[str, Path]] = None):
        if raw_dir is None:
            from config.paths import PATHS
            raw_dir = PATHS.RAW_DATA_DIR
        self.raw_dir = Path(raw_dir)

    def get_bar_series(self, symbol: str) -> BarSeries:
        return load_bar_series(symbol, self.raw_dir / f"{symbol}.csv")

    def available_symbols(self) -> Iterable[str]:
        return sorted(p.stem for p in self.raw_dir.glob("*.csv"))


class InMemorySeriesProvider:
    """Поставщик заранее подготовленных серий (тесты, ноутбуки)"""

    def __init__(self, series: Dict[str, BarSeries]):
        self._series = dict(series)

    def get_bar_series(self, symbol: str) -> BarSeries:
        if symbol not in self._series:
            raise KeyError(f"Нет серии для {symbol}")
        return self._series[symbol]
