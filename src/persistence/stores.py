"""
Хранилища лучших гиперпараметров, аудита конфигураций и моделей.

Файловая раскладка (base_dir = PATHS.MODELS_DIR):
    hyperparams/<symbol>.json            лучшая конфигурация
    metrics/<symbol>_metrics.jsonl       аудит всех оцененных конфигураций
    <symbol>/model.pt                    torch state_dict + метаданные
    <symbol>/scalers.json                параметры нормализаторов
    <symbol>/config.json                 конфигурация модели (пишется последней)
"""

import copy
import json
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import torch

from src.errors import PersistenceFailure
from src.models.lstm_config import LstmConfig
from src.models.predictor import TorchLstmPredictor, TrainedModel
from src.models.scalers import ScalerSet
from utils.logger import get_logger


logger = get_logger("persistence")


def _write_json_atomic(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


# =============================================================================
# ГИПЕРПАРАМЕТРЫ
# =============================================================================

class HyperparameterStore(ABC):
    """Лучшая конфигурация по инструменту + журнал метрик всех конфигураций"""

    @abstractmethod
    def load(self, symbol: str) -> Optional[LstmConfig]:
        ...

    @abstractmethod
    def save(self, symbol: str, config: LstmConfig) -> None:
        ...

    @abstractmethod
    def save_metrics(self, symbol: str, config: LstmConfig, metrics: Dict) -> None:
        ...

    @abstractmethod
    def load_metrics(self, symbol: str) -> List[Dict]:
        ...


class InMemoryHyperparameterStore(HyperparameterStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._configs: Dict[str, LstmConfig] = {}
        self._metrics: Dict[str, List[Dict]] = {}

    def load(self, symbol: str) -> Optional[LstmConfig]:
        with self._lock:
            return self._configs.get(symbol)

    def save(self, symbol: str, config: LstmConfig) -> None:
        with self._lock:
            self._configs[symbol] = config

    def save_metrics(self, symbol: str, config: LstmConfig, metrics: Dict) -> None:
        record = {'config': config.to_dict(), 'metrics': dict(metrics),
                  'timestamp_ms': int(time.time() * 1000)}
        with self._lock:
            self._metrics.setdefault(symbol, []).append(record)

    def load_metrics(self, symbol: str) -> List[Dict]:
        with self._lock:
            return list(self._metrics.get(symbol, []))


class FileHyperparameterStore(HyperparameterStore):

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        if base_dir is None:
            from config.paths import PATHS
            base_dir = PATHS.MODELS_DIR
        self.base_dir = Path(base_dir)
        self.hyperparams_dir = self.base_dir / "hyperparams"
        self.metrics_dir = self.base_dir / "metrics"
        self._lock = threading.Lock()

    def _config_path(self, symbol: str) -> Path:
        return self.hyperparams_dir / f"{symbol}.json"

    def _metrics_path(self, symbol: str) -> Path:
        return self.metrics_dir / f"{symbol}_metrics.jsonl"

    def load(self, symbol: str) -> Optional[LstmConfig]:
        path = self._config_path(symbol)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return LstmConfig.from_dict(json.load(f))

    def save(self, symbol: str, config: LstmConfig) -> None:
        path = self._config_path(symbol)
        try:
            _write_json_atomic(path, config.to_dict())
        except OSError as e:
            raise PersistenceFailure(f"Не удалось сохранить гиперпараметры {symbol}: {e}",
                                     target=str(path))
        logger.info(f"{symbol}: гиперпараметры сохранены в {path}")

    def save_metrics(self, symbol: str, config: LstmConfig, metrics: Dict) -> None:
        path = self._metrics_path(symbol)
        record = {'config': config.to_dict(), 'metrics': dict(metrics),
                  'timestamp_ms': int(time.time() * 1000)}
        try:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as e:
            raise PersistenceFailure(f"Не удалось записать метрики {symbol}: {e}", target=str(path))

    def load_metrics(self, symbol: str) -> List[Dict]:
        path = self._metrics_path(symbol)
        if not path.exists():
            return []
        with open(path, 'r', encoding='utf-8') as f:
            return [json.loads(line) for line in f if line.strip()]


# =============================================================================
# МОДЕЛИ
# =============================================================================

class ModelStore(ABC):
    """Артефакт лучшей модели инструмента: сеть + скейлеры + конфигурация"""

    @abstractmethod
    def exists(self, symbol: str) -> bool:
        ...

    @abstractmethod
    def save(self, symbol: str, model: TrainedModel, config: LstmConfig, scalers: ScalerSet) -> None:
        ...

    @abstractmethod
    def load(self, symbol: str) -> Tuple[LstmConfig, TrainedModel, ScalerSet]:
        ...

    @abstractmethod
    def load_config(self, symbol: str) -> Optional[LstmConfig]:
        ...


class InMemoryModelStore(ModelStore):
    """Копии моделей в памяти: освобождение оригинала не затрагивает хранилище"""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[LstmConfig, TrainedModel, ScalerSet]] = {}

    def exists(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._items

    def save(self, symbol: str, model: TrainedModel, config: LstmConfig, scalers: ScalerSet) -> None:
        with self._lock:
            self._items[symbol] = (config, copy.deepcopy(model), copy.deepcopy(scalers))

    def load(self, symbol: str) -> Tuple[LstmConfig, TrainedModel, ScalerSet]:
        with self._lock:
            if symbol not in self._items:
                raise KeyError(f"Нет модели для {symbol}")
            return self._items[symbol]

    def load_config(self, symbol: str) -> Optional[LstmConfig]:
        with self._lock:
            item = self._items.get(symbol)
        return item[0] if item else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class FileModelStore(ModelStore):
    """Модели в директориях <base_dir>/<symbol>/ (torch.save + JSON)"""

    MODEL_FILE = "model.pt"
    SCALERS_FILE = "scalers.json"
    CONFIG_FILE = "config.json"

    def __init__(self, base_dir: Optional[Union[str, Path]] = None,
                 predictor: Optional[TorchLstmPredictor] = None):
        if base_dir is None:
            from config.paths import PATHS
            base_dir = PATHS.MODELS_DIR
        self.base_dir = Path(base_dir)
        self.predictor = predictor or TorchLstmPredictor(device='cpu')

    def _dir(self, symbol: str) -> Path:
        return self.base_dir / symbol

    def exists(self, symbol: str) -> bool:
        d = self._dir(symbol)
        return (d / self.CONFIG_FILE).exists() and (d / self.MODEL_FILE).exists()

    def save(self, symbol: str, model: TrainedModel, config: LstmConfig, scalers: ScalerSet) -> None:
        """
        Атомарная запись по файлам; config.json пишется последним и служит
        признаком завершенного артефакта.
        """
        d = self._dir(symbol)
        try:
            d.mkdir(parents=True, exist_ok=True)
            tmp_model = d / (self.MODEL_FILE + ".tmp")
            torch.save(self.predictor.export_model(model), tmp_model)
            os.replace(tmp_model, d / self.MODEL_FILE)
            _write_json_atomic(d / self.SCALERS_FILE, scalers.to_dict())
            _write_json_atomic(d / self.CONFIG_FILE, config.to_dict())
        except (OSError, RuntimeError, AttributeError) as e:
            raise PersistenceFailure(f"Не удалось сохранить модель {symbol}: {e}", target=str(d))
        logger.info(f"{symbol}: модель сохранена в {d}")

    def load_config(self, symbol: str) -> Optional[LstmConfig]:
        path = self._dir(symbol) / self.CONFIG_FILE
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return LstmConfig.from_dict(json.load(f))

    def load(self, symbol: str) -> Tuple[LstmConfig, TrainedModel, ScalerSet]:
        if not self.exists(symbol):
            raise FileNotFoundError(f"Модель {symbol} не найдена в {self._dir(symbol)}")
        d = self._dir(symbol)
        config = self.load_config(symbol)
        with open(d / self.SCALERS_FILE, 'r', encoding='utf-8') as f:
            scalers = ScalerSet.from_dict(json.load(f))
        payload = torch.load(d / self.MODEL_FILE, map_location=self.predictor.device)
        model = self.predictor.restore_model(config, payload)
        return config, model, scalers
