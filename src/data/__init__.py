from .bars import BarSeries, BAR_COLUMNS
from .loader import (
    load_bar_series,
    clear_cache,
    CsvSeriesProvider,
    InMemorySeriesProvider
)

__all__ = [
    'BarSeries',
    'BAR_COLUMNS',
    'load_bar_series',
    'clear_cache',
    'CsvSeriesProvider',
    'InMemorySeriesProvider'
]
