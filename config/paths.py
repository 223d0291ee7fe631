"""
Управление путями к файлам и директориям проекта.
Обеспечивает кросс-платформенную совместимость.
"""

import os
from pathlib import Path
from typing import Dict, Optional


class ProjectPaths:
    """Централизованное управление путями проекта"""

    def __init__(self, base_dir: Optional[str] = None):
        if base_dir is None:
            base_dir = os.environ.get("LSTM_TUNER_HOME")
        if base_dir is None:
            self.BASE_DIR = Path(__file__).resolve().parent.parent
        else:
            self.BASE_DIR = Path(base_dir)

        self._init_directories()

    def _init_directories(self) -> None:
        """Инициализация всех путей проекта"""
        self.DATA_DIR = self.BASE_DIR / "data"
        self.RAW_DATA_DIR = self.DATA_DIR / "raw"

        self.MODELS_DIR = self.BASE_DIR / "models"
        self.HYPERPARAMS_DIR = self.MODELS_DIR / "hyperparams"
        self.METRICS_DIR = self.MODELS_DIR / "metrics"

        self.LOGS_DIR = self.BASE_DIR / "logs"
        self.RESULTS_DIR = self.BASE_DIR / "results"
        self.REPORTS_DIR = self.RESULTS_DIR / "reports"

        self.CONFIG_DIR = self.BASE_DIR / "config"

    def create_directories(self) -> None:
        """Создание всех необходимых директорий"""
        dirs_to_create = [
            self.RAW_DATA_DIR, self.MODELS_DIR, self.HYPERPARAMS_DIR,
            self.METRICS_DIR, self.LOGS_DIR, self.REPORTS_DIR
        ]

        for directory in dirs_to_create:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise OSError(f"Не удалось создать директорию {directory}: {e}")

    def get_raw_data_path(self, symbol: str) -> Path:
        """Путь к CSV с барами инструмента"""
        return self.RAW_DATA_DIR / f"{symbol}.csv"

    def get_model_dir(self, symbol: str) -> Path:
        """Директория артефактов модели инструмента"""
        return self.MODELS_DIR / symbol

    def get_progress_metrics_path(self) -> Path:
        """JSON-журнал итогов тюнинга по инструментам"""
        return self.RESULTS_DIR / "tuning_progress_metrics.json"

    def get_default_config_path(self) -> Path:
        return self.CONFIG_DIR / "tuning_config.yaml"

    def validate_paths(self) -> Dict[str, bool]:
        """Проверка существования всех критических путей"""
        critical_dirs = {
            "base": self.BASE_DIR,
            "raw_data": self.RAW_DATA_DIR,
            "models": self.MODELS_DIR,
            "logs": self.LOGS_DIR
        }
        return {name: path.exists() and path.is_dir() for name, path in critical_dirs.items()}


# Глобальный экземпляр путей
PATHS = ProjectPaths()
