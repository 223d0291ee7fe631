"""
Мониторинг прогресса тюнинга.

Записи прогресса и журнал ошибок читаются мониторингом параллельно с
записью из рабочих потоков; наружу отдаются только снимки.
"""

import json
import threading
import time
import traceback
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from src.models.lstm_config import LstmConfig
from utils.logger import get_logger


logger = get_logger("monitoring")

STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_ERROR = "error"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Неизменяемый снимок TuningProgress"""
    symbol: str
    total_configs: int
    tested_configs: int
    failed_configs: int
    status: str
    start_time_ms: int
    last_update_ms: int
    end_time_ms: int
    cumulative_config_ms: int
    threads_used: int

    def to_dict(self) -> Dict:
        return asdict(self)


class TuningProgress:
    """Счетчики прогресса одного инструмента"""

    def __init__(self, symbol: str, total_configs: int, threads_used: int = 1):
        self._lock = threading.Lock()
        self.symbol = symbol
        self.total_configs = total_configs
        self.tested_configs = 0
        self.failed_configs = 0
        self.status = STATUS_RUNNING
        self.start_time_ms = _now_ms()
        self.last_update_ms = self.start_time_ms
        self.end_time_ms = 0
        self.cumulative_config_ms = 0
        self.threads_used = threads_used

    def mark_tested(self, duration_ms: int, failed: bool = False) -> None:
        """Завершение одной конфигурации (успешно или с ошибкой)"""
        with self._lock:
            self.tested_configs += 1
            if failed:
                self.failed_configs += 1
            self.cumulative_config_ms += max(int(duration_ms), 0)
            self.last_update_ms = _now_ms()

    def add_configs(self, n: int) -> None:
        """Расширение плана (вторая фаза тюнинга)"""
        with self._lock:
            self.total_configs += max(int(n), 0)
            self.last_update_ms = _now_ms()

    def finish(self, status: str) -> None:
        with self._lock:
            self.status = status
            self.end_time_ms = _now_ms()
            self.last_update_ms = self.end_time_ms

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(
                symbol=self.symbol,
                total_configs=self.total_configs,
                tested_configs=self.tested_configs,
                failed_configs=self.failed_configs,
                status=self.status,
                start_time_ms=self.start_time_ms,
                last_update_ms=self.last_update_ms,
                end_time_ms=self.end_time_ms,
                cumulative_config_ms=self.cumulative_config_ms,
                threads_used=self.threads_used
            )


class ProgressRegistry:
    """Все записи прогресса по инструментам"""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, TuningProgress] = {}

    def start(self, symbol: str, total_configs: int, threads_used: int) -> TuningProgress:
        progress = TuningProgress(symbol, total_configs, threads_used)
        with self._lock:
            self._records[symbol] = progress
        return progress

    def get(self, symbol: str) -> Optional[TuningProgress]:
        with self._lock:
            return self._records.get(symbol)

    def snapshot(self) -> Dict[str, ProgressSnapshot]:
        with self._lock:
            records = list(self._records.values())
        return {p.symbol: p.snapshot() for p in records}

    def running(self) -> List[ProgressSnapshot]:
        return [s for s in self.snapshot().values() if s.status == STATUS_RUNNING]


@dataclass(frozen=True)
class ExceptionReportEntry:
    symbol: str
    config: Optional[LstmConfig]
    message: str
    stack_trace: str
    timestamp_ms: int

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'config': self.config.to_dict() if self.config is not None else None,
            'message': self.message,
            'stack_trace': self.stack_trace,
            'timestamp_ms': self.timestamp_ms,
        }


class ExceptionReport:
    """Журнал ошибок тюнинга (только добавление)"""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: List[ExceptionReportEntry] = []

    def record(self, symbol: str, config: Optional[LstmConfig],
               error: BaseException) -> ExceptionReportEntry:
        entry = ExceptionReportEntry(
            symbol=symbol,
            config=config,
            message=f"{type(error).__name__}: {error}",
            stack_trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            timestamp_ms=_now_ms()
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def snapshot(self) -> List[ExceptionReportEntry]:
        with self._lock:
            return list(self._entries)

    def for_symbol(self, symbol: str) -> List[ExceptionReportEntry]:
        return [e for e in self.snapshot() if e.symbol == symbol]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ProgressHeartbeat:
    """Фоновый поток, периодически логирующий прогресс активных инструментов"""

    def __init__(self, registry: ProgressRegistry, interval_s: float = 30.0):
        self.registry = registry
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ProgressHeartbeat":
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="tuning-heartbeat", daemon=True)
            self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_s)
            self._thread = None

    def beat(self) -> None:
        for snap in self.registry.running():
            elapsed_s = (_now_ms() - snap.start_time_ms) / 1000.0
            logger.info(f"[HEARTBEAT] {snap.symbol}: {snap.tested_configs}/{snap.total_configs} "
                        f"конфигураций, ошибок {snap.failed_configs}, {elapsed_s:.0f}s")

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.beat()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()


_METRICS_FILE_LOCK = threading.Lock()


def build_progress_metrics(snapshot: ProgressSnapshot) -> Dict:
    """Итоговая запись тюнинга инструмента для JSON-журнала"""
    end_ms = snapshot.end_time_ms or _now_ms()
    duration_ms = max(end_ms - snapshot.start_time_ms, 0)
    tested = snapshot.tested_configs
    return {
        'symbol': snapshot.symbol,
        'status': snapshot.status,
        'totalConfigs': snapshot.total_configs,
        'testedConfigs': tested,
        'failedConfigs': snapshot.failed_configs,
        'durationMs': duration_ms,
        'configsPerSecond': tested / (duration_ms / 1000.0) if duration_ms > 0 else 0.0,
        'meanConfigDurationMs': snapshot.cumulative_config_ms / tested if tested else 0.0,
        'threadsUsed': snapshot.threads_used,
        'startTime': datetime.fromtimestamp(snapshot.start_time_ms / 1000.0).isoformat(),
        'endTime': datetime.fromtimestamp(end_ms / 1000.0).isoformat(),
    }


def append_progress_metrics(path: Union[str, Path], record: Dict) -> None:
    """Добавление записи в JSON-массив (файл создается при первой записи)"""
    path = Path(path)
    with _METRICS_FILE_LOCK:
        records = []
        if path.exists():
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
                records = loaded if isinstance(loaded, list) else [loaded]
            except json.JSONDecodeError as e:
                logger.warning(f"Поврежденный журнал прогресса {path}, начинаем заново: {e}")

        records.append(record)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(records, f, indent=2, ensure_ascii=False)
        tmp.replace(path)
