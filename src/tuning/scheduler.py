"""
Тюнинг нескольких инструментов на отдельном ограниченном пуле.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional, Sequence, Union

from src.data.bars import BarSeries
from src.models.lstm_config import LstmConfig
from src.monitoring.progress import ProgressHeartbeat
from src.tuning.governor import ResourceGovernor
from src.tuning.orchestrator import TuningOrchestrator
from utils.logger import get_logger


logger = get_logger("scheduler")

SeriesProvider = Union[Callable[[str], BarSeries], object]


def _resolve_series(provider: SeriesProvider, symbol: str) -> BarSeries:
    if hasattr(provider, "get_bar_series"):
        return provider.get_bar_series(symbol)
    return provider(symbol)


class MultiSymbolScheduler:
    """Последовательный или параллельный тюнинг списка инструментов"""

    def __init__(self,
                 orchestrator: TuningOrchestrator,
                 governor: Optional[ResourceGovernor] = None,
                 max_parallel_symbols: Optional[int] = None,
                 heartbeat_interval_s: Optional[float] = None):
        self.orchestrator = orchestrator
        self.governor = governor or orchestrator.governor
        params = orchestrator.params
        if max_parallel_symbols is None:
            max_parallel_symbols = params.governor.max_parallel_symbols
        self.max_parallel_symbols = max(1, min(max_parallel_symbols,
                                               self.governor.effective_parallelism()))
        if heartbeat_interval_s is None and params.monitoring.heartbeat_enabled:
            heartbeat_interval_s = params.monitoring.heartbeat_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.two_phase = params.two_phase.enabled

    def _tune_one(self, symbol: str, grid: Sequence[LstmConfig],
                  series_provider: SeriesProvider) -> Optional[LstmConfig]:
        try:
            self.governor.wait_until_memory_available()
            series = _resolve_series(series_provider, symbol)
            if self.two_phase:
                return self.orchestrator.tune_instrument_two_phase(symbol, grid, series)
            return self.orchestrator.tune_instrument(symbol, grid, series)
        except Exception as e:
            logger.error(f"{symbol}: тюнинг прерван: {e}", exc_info=True)
            self.orchestrator.exception_report.record(symbol, None, e)
            return None
        finally:
            self.orchestrator.predictor.release_resources()

    def tune_all(self, symbols: Sequence[str], grid: Sequence[LstmConfig],
                 series_provider: SeriesProvider) -> Dict[str, Optional[LstmConfig]]:
        """
        Тюнинг всех инструментов; ошибка одного не останавливает остальные.

        Returns:
            {symbol: лучшая конфигурация или None}
        """
        symbols = list(symbols)
        results: Dict[str, Optional[LstmConfig]] = {}
        if not symbols:
            return results

        logger.info(f"Тюнинг {len(symbols)} инструментов, параллельно до {self.max_parallel_symbols}")

        heartbeat = None
        if self.heartbeat_interval_s:
            heartbeat = ProgressHeartbeat(self.orchestrator.registry, self.heartbeat_interval_s).start()

        try:
            with ThreadPoolExecutor(max_workers=self.max_parallel_symbols,
                                    thread_name_prefix="tune-symbol") as executor:
                futures = {s: executor.submit(self._tune_one, s, grid, series_provider)
                           for s in symbols}
                for symbol in symbols:
                    results[symbol] = futures[symbol].result()
        finally:
            if heartbeat is not None:
                heartbeat.stop()

        succeeded = sum(1 for c in results.values() if c is not None)
        logger.info(f"Тюнинг завершен: успешно {succeeded}/{len(symbols)}")
        return results
