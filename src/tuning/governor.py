"""
Контроль параллелизма и памяти для тюнинга.

    - effective_parallelism: число потоков с учетом ядер, GPU и потолка
    - wait_until_memory_available: блокировка, пока память выше порога
    - gpu_slot: семафор одновременных обучений на GPU
    - scale_batch_for_gpu: авто-увеличение batch (и LR) на GPU
"""

import os
import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional

import psutil
import torch

from config.hyperparameters import HYPERPARAMS, GovernorConfig, GpuBatchConfig
from src.models.lstm_config import LstmConfig
from utils.logger import get_logger


logger = get_logger("governor")


def detect_gpu() -> bool:
    """Есть ли CUDA-бэкенд у torch"""
    try:
        return torch.cuda.is_available()
    except RuntimeError as e:
        logger.warning(f"Не удалось опросить CUDA: {e}")
        return False


class ResourceGovernor:
    """Потоки, память и GPU-разрешения для пула тюнинга"""

    def __init__(self,
                 config: Optional[GovernorConfig] = None,
                 gpu_batch: Optional[GpuBatchConfig] = None,
                 gpu_available: Optional[bool] = None,
                 cpu_count: Optional[int] = None,
                 memory_reader: Optional[Callable[[], float]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or HYPERPARAMS.governor
        self.gpu_batch = gpu_batch or HYPERPARAMS.gpu_batch
        self.gpu_available = detect_gpu() if gpu_available is None else gpu_available
        self.cpu_count = cpu_count or os.cpu_count() or 1
        self._memory_reader = memory_reader or self._default_memory_reader
        self._sleep = sleep
        self._gpu_semaphore = threading.BoundedSemaphore(max(1, self.config.gpu_max_concurrency))

    # ------------------------------------------------------------------
    # Потоки
    # ------------------------------------------------------------------

    def effective_parallelism(self) -> int:
        """
        Число рабочих потоков:
            явное значение или cores - reserve (минимум 1),
            при GPU не больше max(1, min(gpu_thread_cap, cores // 2)),
            всегда в [1, hard_max_threads].
        """
        cfg = self.config
        if cfg.max_threads > 0:
            threads = cfg.max_threads
        else:
            threads = max(1, self.cpu_count - cfg.cpu_reserve)

        if self.gpu_available:
            threads = min(threads, max(1, min(cfg.gpu_thread_cap, self.cpu_count // 2)))

        return max(1, min(threads, cfg.hard_max_threads))

    def pool_size(self, n_tasks: int) -> int:
        """Размер пула под n_tasks задач"""
        return max(1, min(n_tasks, self.cpu_count, self.effective_parallelism()))

    # ------------------------------------------------------------------
    # Память
    # ------------------------------------------------------------------

    def _default_memory_reader(self) -> float:
        budget = self.config.memory_budget_bytes
        if budget > 0:
            rss = psutil.Process(os.getpid()).memory_info().rss
            return rss / budget
        return psutil.virtual_memory().percent / 100.0

    def memory_usage_fraction(self) -> float:
        return float(self._memory_reader())

    def is_memory_high(self) -> bool:
        return self.memory_usage_fraction() > self.config.memory_threshold

    def wait_until_memory_available(self, max_wait_s: Optional[float] = None) -> float:
        """
        Ожидание, пока использование памяти выше порога.

        Returns:
            Суммарное время ожидания в секундах (0, если ждать не пришлось)
        """
        waited = 0.0
        while True:
            usage = self.memory_usage_fraction()
            if usage <= self.config.memory_threshold:
                break
            if max_wait_s is not None and waited >= max_wait_s:
                logger.warning(f"Память все еще выше порога после {waited:.0f}s, продолжаем")
                break
            logger.warning(
                f"Память {usage:.0%} > "
                f"{self.config.memory_threshold:.0%}, пауза {self.config.poll_interval_s}s"
            )
            self._sleep(self.config.poll_interval_s)
            waited += self.config.poll_interval_s
        return waited

    # ------------------------------------------------------------------
    # GPU
    # ------------------------------------------------------------------

    @contextmanager
    def gpu_slot(self):
        """Разрешение на обучение на GPU (без GPU - без ограничений)"""
        if not self.gpu_available:
            yield
            return
        self._gpu_semaphore.acquire()
        try:
            yield
        finally:
            self._gpu_semaphore.release()

    def scale_batch_for_gpu(self, config: LstmConfig) -> LstmConfig:
        """
        Удвоение batch до target_batch_size на GPU.
        LR масштабируется как old / new, чтобы шаг на пример не рос.
        """
        gb = self.gpu_batch
        if not (self.gpu_available and gb.auto_batch_scale):
            return config
        if config.batch_size >= gb.target_batch_size:
            return config

        new_batch = config.batch_size
        while new_batch < gb.target_batch_size:
            new_batch *= 2
        new_batch = min(new_batch, gb.target_batch_size)

        changes = {'batch_size': new_batch}
        if gb.scale_learning_rate:
            changes['learning_rate'] = config.learning_rate * config.batch_size / new_batch

        logger.debug(f"GPU batch {config.batch_size} -> {new_batch}")
        return config.with_updates(**changes)
