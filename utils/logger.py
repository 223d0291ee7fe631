"""
Централизованная система логирования с поддержкой различных уровней
и автоматической ротации файлов.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler
from datetime import datetime


PROJECT_LOGGER_NAME = "LstmTuner"


class CustomFormatter(logging.Formatter):
    """Форматтер с цветовой разметкой для консоли"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m'   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Копия записи: файловые обработчики не должны получить ANSI-коды
        colored = logging.makeLogRecord(record.__dict__)
        log_color = self.COLORS.get(colored.levelname, self.RESET)
        colored.levelname = f"{log_color}{colored.levelname}{self.RESET}"
        return super().format(colored)


class ProjectLogger:
    """Главный класс логирования проекта"""

    def __init__(self,
                 name: str = PROJECT_LOGGER_NAME,
                 log_dir: Optional[Path] = None,
                 console_level: int = logging.INFO,
                 to_files: bool = True):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        self.logger.handlers.clear()
        self.logger.propagate = False

        if log_dir is None and to_files:
            from config.paths import PATHS
            log_dir = PATHS.LOGS_DIR

        self.log_dir = log_dir
        self.console_level = console_level
        self._setup_handlers()

    def _setup_handlers(self) -> None:
        """Настройка обработчиков логов"""
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.console_level)
        console_handler.setFormatter(CustomFormatter(
            '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        self.logger.addHandler(console_handler)

        if self.log_dir is None:
            return

        try:
            Path(self.log_dir).mkdir(parents=True, exist_ok=True)
            file_format = logging.Formatter(
                '%(asctime)s | %(levelname)-8s | %(name)s | %(threadName)s | '
                '%(funcName)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )

            # Файловый обработчик для всех логов
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            file_handler = RotatingFileHandler(
                Path(self.log_dir) / f"tuning_{timestamp}.log",
                maxBytes=50*1024*1024,  # 50 MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(file_format)

            # Файловый обработчик только для ошибок
            error_handler = RotatingFileHandler(
                Path(self.log_dir) / f"errors_{timestamp}.log",
                maxBytes=20*1024*1024,  # 20 MB
                backupCount=3,
                encoding='utf-8'
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(file_format)

            self.logger.addHandler(file_handler)
            self.logger.addHandler(error_handler)
        except OSError as e:
            # Без файловых логов продолжаем работать в консоли
            self.logger.warning(f"Файловое логирование недоступно ({self.log_dir}): {e}")

    def log_tuning_summary(self, symbol: str, status: str, metrics: dict) -> None:
        """Специализированный лог итогов тюнинга"""
        self.logger.info(f"[TUNING] {symbol} | status={status} | {metrics}")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Дочерний логгер проекта (LstmTuner.<name>)"""
    if not name:
        return LOGGER
    return LOGGER.getChild(name)


PROJECT_LOGGER = ProjectLogger()
LOGGER = PROJECT_LOGGER.logger
