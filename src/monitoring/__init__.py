from .progress import (
    TuningProgress,
    ProgressSnapshot,
    ProgressRegistry,
    ExceptionReport,
    ExceptionReportEntry,
    ProgressHeartbeat,
    build_progress_metrics,
    append_progress_metrics,
    STATUS_RUNNING,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_ERROR
)

__all__ = [
    'TuningProgress',
    'ProgressSnapshot',
    'ProgressRegistry',
    'ExceptionReport',
    'ExceptionReportEntry',
    'ProgressHeartbeat',
    'build_progress_metrics',
    'append_progress_metrics',
    'STATUS_RUNNING',
    'STATUS_DONE',
    'STATUS_FAILED',
    'STATUS_ERROR'
]
