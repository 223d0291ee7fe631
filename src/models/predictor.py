"""
Рекуррентный предиктор: обучение LSTM и прогноз цены на horizon_bars вперед.

Контракт (Predictor):
    train(series, config)                       -> (TrainedModel, ScalerSet)
    predict_next(series, config, model, scalers) -> float
    predict_range(...)                           -> прогнозы для диапазона баров
    release(model)                               -> освобождение ресурсов бэкенда

Цель обучения - лог-доходность close[t + h] / close[t]; прогноз переводится
обратно в цену через последнюю известную цену закрытия.
"""

import copy
import gc
import random
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.optim as optim
from torch.utils.data import Dataset, DataLoader

from src.data.bars import BarSeries
from src.errors import InsufficientDataError, TrainingFailure, ScalerMismatchError
from src.features.engineering import build_feature_matrix
from src.models.lstm_config import LstmConfig
from src.models.scalers import ScalerSet
from utils.logger import LOGGER


# Инициализация весов использует глобальный RNG torch; все его переустановки
# идут под этим замком
_INIT_LOCK = threading.Lock()


def set_global_seeds(seed: int) -> None:
    """Фиксация seed для random, numpy и torch"""
    with _INIT_LOCK:
        random.seed(seed)
        np.random.seed(seed % (2 ** 32))
        torch.manual_seed(seed)


@dataclass
class TrainedModel:
    """Обученная сеть, привязанная к конфигурации и набору скейлеров"""
    network: Any
    config_key: str
    model_id: str
    n_features: int
    device: str = 'cpu'
    history: Dict[str, List[float]] = field(default_factory=dict)

    @property
    def released(self) -> bool:
        return self.network is None


class Predictor(ABC):
    """Абстрактный обучаемый предиктор"""

    @abstractmethod
    def train(self, series: BarSeries, config: LstmConfig) -> Tuple[TrainedModel, ScalerSet]:
        ...

    @abstractmethod
    def predict_next(self, series: BarSeries, config: LstmConfig,
                     model: TrainedModel, scalers: ScalerSet) -> float:
        ...

    def predict_range(self, series: BarSeries, config: LstmConfig,
                      model: TrainedModel, scalers: ScalerSet,
                      start: int, end: int) -> np.ndarray:
        """
        Прогнозы для баров t в [start, end): каждый использует только бары <= t.
        Базовая реализация режет серию на префиксы.
        """
        return np.array([
            self.predict_next(series.head(t + 1), config, model, scalers)
            for t in range(start, end)
        ], dtype=np.float64)

    def release(self, model: Optional[TrainedModel]) -> None:
        """Освобождение модели (после выбора лучшей или при ошибке)"""
        if model is not None:
            model.network = None

    def release_resources(self) -> None:
        """Очистка между инструментами"""
        gc.collect()

    @property
    def uses_gpu(self) -> bool:
        return False


class WindowDataset(Dataset):
    """Окна признаков (window, n_features) и скалированные метки"""

    def __init__(self, windows: np.ndarray, labels: np.ndarray):
        self.windows = torch.as_tensor(windows, dtype=torch.float32)
        self.labels = torch.as_tensor(labels, dtype=torch.float32)

    def __len__(self) -> int:
        return len(self.windows)

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, torch.Tensor]:
        return self.windows[idx], self.labels[idx]


class LstmRegressor(nn.Module):
    """
    Стек однослойных LSTM с опциональным attention-пулингом и линейной головой.

    Маски dropout берутся из переданного генератора, а не из глобального RNG
    torch: результат обучения не зависит от соседних потоков.
    """

    def __init__(self,
                 n_features: int,
                 hidden_units: int,
                 num_layers: int = 1,
                 dropout: float = 0.0,
                 bidirectional: bool = False,
                 attention: bool = False):
        super(LstmRegressor, self).__init__()

        out_dim = hidden_units * (2 if bidirectional else 1)
        self.layers = nn.ModuleList()
        in_dim = n_features
        for _ in range(num_layers):
            self.layers.append(nn.LSTM(
                input_size=in_dim,
                hidden_size=hidden_units,
                num_layers=1,
                batch_first=True,
                bidirectional=bidirectional
            ))
            in_dim = out_dim
        self.dropout = dropout
        self.attention = nn.Linear(out_dim, 1) if attention else None
        self.head = nn.Linear(out_dim, 1)

    def _drop(self, x: torch.Tensor, generator: Optional[torch.Generator]) -> torch.Tensor:
        if not self.training or self.dropout == 0.0:
            return x
        keep = 1.0 - self.dropout
        noise = torch.rand(x.shape, generator=generator, device=x.device)
        return x * (noise < keep).to(x.dtype) / keep

    def forward(self, x: torch.Tensor, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        out = x
        for i, lstm in enumerate(self.layers):
            out, _ = lstm(out)
            if i < len(self.layers) - 1:
                out = self._drop(out, generator)
        if self.attention is not None:
            weights = torch.softmax(self.attention(out), dim=1)
            context = (weights * out).sum(dim=1)
        else:
            context = out[:, -1, :]
        return self.head(self._drop(context, generator)).squeeze(-1)


def _sliding_windows(matrix: np.ndarray, window: int) -> np.ndarray:
    """(n, f) -> (n - window + 1, window, f); окно i заканчивается на баре i + window - 1"""
    view = np.lib.stride_tricks.sliding_window_view(matrix, window, axis=0)
    return np.ascontiguousarray(view.transpose(0, 2, 1))


class TorchLstmPredictor(Predictor):
    """LSTM-предиктор на PyTorch"""

    OPTIMIZERS = {
        'adam': optim.Adam,
        'adamw': optim.AdamW,
        'sgd': optim.SGD,
        'rmsprop': optim.RMSprop,
    }

    def __init__(self, device: Optional[str] = None, val_fraction: float = 0.2,
                 predict_batch_size: int = 512):
        self.device = device or ('cuda' if torch.cuda.is_available() else 'cpu')
        self.val_fraction = val_fraction
        self.predict_batch_size = predict_batch_size

    @property
    def uses_gpu(self) -> bool:
        return self.device.startswith('cuda')

    # ------------------------------------------------------------------
    # Обучение
    # ------------------------------------------------------------------

    def _build_network(self, config: LstmConfig, n_features: int) -> LstmRegressor:
        with _INIT_LOCK:
            torch.manual_seed(config.seed)
            network = LstmRegressor(
                n_features=n_features,
                hidden_units=config.hidden_units,
                num_layers=config.num_layers,
                dropout=config.dropout,
                bidirectional=config.bidirectional,
                attention=config.attention
            )
        return network.to(self.device)

    def _prepare_samples(self, series: BarSeries, config: LstmConfig):
        """Окна признаков и лог-доходности на горизонте для обучающего префикса"""
        n = len(series)
        w, h = config.window_size, config.horizon_bars
        n_samples = n - w - h + 1
        if n_samples < 1:
            raise InsufficientDataError(
                f"{series.symbol}: {n} баров недостаточно для window={w}, horizon={h}",
                series_length=n,
                required=w + h
            )

        features = build_feature_matrix(series, config.features)
        close = series.close
        ends = np.arange(w - 1, w - 1 + n_samples)
        labels = np.log(close[ends + h] / close[ends])
        return features, labels

    def _validation_size(self, config: LstmConfig, n_samples: int) -> int:
        fraction = self.val_fraction if config.cv_mode == 'split' else 1.0 / config.k_folds
        n_val = int(n_samples * fraction)
        return n_val if n_samples - n_val >= 1 else 0

    @staticmethod
    def _penalty(network: nn.Module, l1: float, l2: float) -> torch.Tensor:
        penalty = torch.zeros((), device=next(network.parameters()).device)
        if l1 == 0 and l2 == 0:
            return penalty
        for name, param in network.named_parameters():
            if 'weight' not in name:
                continue
            if l1 > 0:
                penalty = penalty + l1 * param.abs().sum()
            if l2 > 0:
                penalty = penalty + l2 * param.pow(2).sum()
        return penalty

    def train(self, series: BarSeries, config: LstmConfig) -> Tuple[TrainedModel, ScalerSet]:
        """
        Обучение сети на всей переданной серии.

        Raises:
            InsufficientDataError: Серия короче window_size + horizon_bars
            TrainingFailure: Лосс стал NaN/inf
        """
        features, labels = self._prepare_samples(series, config)
        scalers = ScalerSet.fit(
            features, labels, list(config.features),
            label_method=config.label_normalization,
            config_key=config.fingerprint()
        )

        windows = _sliding_windows(scalers.transform_features(features), config.window_size)
        windows = windows[:len(labels)]
        scaled_labels = scalers.transform_labels(labels)

        n_val = self._validation_size(config, len(labels))
        n_train = len(labels) - n_val
        train_ds = WindowDataset(windows[:n_train], scaled_labels[:n_train])
        val_ds = WindowDataset(windows[n_train:], scaled_labels[n_train:]) if n_val > 0 else None

        # Перемешивание и маски dropout - собственные генераторы конфигурации
        generator = torch.Generator().manual_seed(config.seed)
        loader = DataLoader(train_ds, batch_size=config.batch_size, shuffle=True,
                            generator=generator, num_workers=0)
        dropout_generator = torch.Generator(device=self.device).manual_seed(config.seed + 1)

        network = self._build_network(config, features.shape[1])
        opt_cls = self.OPTIMIZERS[config.optimizer]
        optimizer = opt_cls(network.parameters(), lr=config.learning_rate)
        criterion = nn.MSELoss()

        history: Dict[str, List[float]] = {'train_loss': [], 'val_loss': []}
        best_loss = float('inf')
        best_state = None
        wait = 0

        for epoch in range(config.num_epochs):
            network.train()
            epoch_loss = 0.0
            num_batches = 0
            for batch_x, batch_y in loader:
                batch_x = batch_x.to(self.device)
                batch_y = batch_y.to(self.device)

                optimizer.zero_grad()
                loss = criterion(network(batch_x, dropout_generator), batch_y)
                total = loss + self._penalty(network, config.l1, config.l2)
                if not torch.isfinite(total):
                    raise TrainingFailure(
                        f"{series.symbol}: лосс не конечен на эпохе {epoch + 1} ({config.short_repr()})"
                    )
                total.backward()
                optimizer.step()

                epoch_loss += loss.item()
                num_batches += 1

            train_loss = epoch_loss / max(num_batches, 1)
            history['train_loss'].append(train_loss)

            monitored = train_loss
            if val_ds is not None:
                monitored = self._evaluate_loss(network, val_ds, criterion)
                history['val_loss'].append(monitored)

            if (epoch + 1) % 10 == 0:
                LOGGER.debug(f"{series.symbol} Epoch [{epoch + 1}/{config.num_epochs}] | "
                             f"train: {train_loss:.6f} | monitored: {monitored:.6f}")

            # Ранняя остановка по улучшению больше min_delta
            if monitored < best_loss - config.min_delta:
                best_loss = monitored
                best_state = copy.deepcopy(network.state_dict())
                wait = 0
            else:
                wait += 1
                if wait > config.patience:
                    LOGGER.debug(f"{series.symbol}: ранняя остановка на эпохе {epoch + 1}")
                    break

        if best_state is not None:
            network.load_state_dict(best_state)
        network.eval()

        model = TrainedModel(
            network=network,
            config_key=scalers.config_key,
            model_id=scalers.model_id,
            n_features=features.shape[1],
            device=self.device,
            history=history
        )
        return model, scalers

    def _evaluate_loss(self, network: nn.Module, dataset: WindowDataset, criterion) -> float:
        network.eval()
        with torch.no_grad():
            x = dataset.windows.to(self.device)
            y = dataset.labels.to(self.device)
            loss = criterion(network(x), y).item()
        if not np.isfinite(loss):
            raise TrainingFailure(f"Валидационный лосс не конечен: {loss}")
        return loss

    # ------------------------------------------------------------------
    # Прогноз
    # ------------------------------------------------------------------

    def _check_binding(self, config: LstmConfig, model: TrainedModel, scalers: ScalerSet) -> None:
        if model.released:
            raise ScalerMismatchError("Модель уже освобождена")
        if model.config_key != config.fingerprint():
            raise ScalerMismatchError(
                f"Модель обучена для конфигурации {model.config_key}, получена {config.fingerprint()}"
            )
        scalers.check_binding(config.fingerprint(), model.model_id)

    def predict_range(self, series: BarSeries, config: LstmConfig,
                      model: TrainedModel, scalers: ScalerSet,
                      start: int, end: int) -> np.ndarray:
        """Пакетный прогноз: признаки каузальны, поэтому считаются один раз на серии"""
        self._check_binding(config, model, scalers)
        w = config.window_size
        if start < w - 1 or end > len(series) or start >= end:
            raise InsufficientDataError(
                f"Диапазон [{start}, {end}) недоступен для window={w} и серии из {len(series)} баров",
                series_length=len(series),
                required=w
            )

        features = build_feature_matrix(series.head(end), config.features)
        windows = _sliding_windows(scalers.transform_features(features), w)
        windows = windows[start - w + 1:end - w + 1]

        outputs = []
        model.network.eval()
        with torch.no_grad():
            for i in range(0, len(windows), self.predict_batch_size):
                batch = torch.as_tensor(windows[i:i + self.predict_batch_size],
                                        dtype=torch.float32, device=model.device)
                outputs.append(model.network(batch).cpu().numpy())

        log_returns = scalers.inverse_labels(np.concatenate(outputs))
        return series.close[start:end] * np.exp(log_returns)

    def predict_next(self, series: BarSeries, config: LstmConfig,
                     model: TrainedModel, scalers: ScalerSet) -> float:
        """Прогноз цены закрытия через horizon_bars от последнего бара серии"""
        n = len(series)
        return float(self.predict_range(series, config, model, scalers, n - 1, n)[0])

    # ------------------------------------------------------------------
    # Сериализация и освобождение
    # ------------------------------------------------------------------

    def export_model(self, model: TrainedModel) -> Dict[str, Any]:
        """Состояние для torch.save"""
        return {
            'state_dict': {k: v.detach().cpu() for k, v in model.network.state_dict().items()},
            'n_features': model.n_features,
            'config_key': model.config_key,
            'model_id': model.model_id,
        }

    def restore_model(self, config: LstmConfig, payload: Dict[str, Any]) -> TrainedModel:
        """Восстановление сети из export_model"""
        network = self._build_network(config, payload['n_features'])
        network.load_state_dict(payload['state_dict'])
        network.eval()
        return TrainedModel(
            network=network,
            config_key=payload['config_key'],
            model_id=payload['model_id'],
            n_features=payload['n_features'],
            device=self.device
        )

    def release(self, model: Optional[TrainedModel]) -> None:
        super().release(model)
        if self.uses_gpu:
            torch.cuda.empty_cache()

    def release_resources(self) -> None:
        gc.collect()
        if self.uses_gpu:
            torch.cuda.empty_cache()
