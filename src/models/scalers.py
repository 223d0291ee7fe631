"""
Нормализаторы признаков и метки, привязанные к одной паре (конфигурация, модель).
"""

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Union

import numpy as np
from sklearn.preprocessing import MinMaxScaler, StandardScaler

from src.errors import ScalerMismatchError
from src.features.engineering import get_feature_normalization


Scaler = Union[MinMaxScaler, StandardScaler]


def make_scaler(method: str) -> Scaler:
    if method == 'zscore':
        return StandardScaler()
    if method == 'minmax':
        return MinMaxScaler()
    raise ValueError(f"Неизвестный метод нормализации: {method}")


def _scaler_to_dict(scaler: Scaler) -> Dict:
    if isinstance(scaler, StandardScaler):
        return {'method': 'zscore', 'mean': float(scaler.mean_[0]),
                'scale': float(scaler.scale_[0]), 'var': float(scaler.var_[0]),
                'n_samples_seen': int(np.asarray(scaler.n_samples_seen_).max())}
    return {'method': 'minmax', 'data_min': float(scaler.data_min_[0]),
            'data_max': float(scaler.data_max_[0])}


def _scaler_from_dict(payload: Dict) -> Scaler:
    if payload['method'] == 'zscore':
        scaler = StandardScaler()
        scaler.mean_ = np.array([payload['mean']])
        scaler.var_ = np.array([payload['var']])
        scaler.scale_ = np.array([payload['scale']])
        scaler.n_features_in_ = 1
        scaler.n_samples_seen_ = payload.get('n_samples_seen', 0)
        return scaler
    # Min-max однозначно определяется двумя крайними точками
    scaler = MinMaxScaler()
    scaler.fit(np.array([[payload['data_min']], [payload['data_max']]]))
    return scaler


@dataclass
class ScalerSet:
    """Набор нормализаторов: по одному на признак и один для метки"""
    feature_names: List[str]
    feature_scalers: Dict[str, Scaler]
    label_scaler: Scaler
    config_key: str
    model_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def fit(cls, features: np.ndarray, labels: np.ndarray, feature_names: List[str],
            label_method: str, config_key: str) -> "ScalerSet":
        """
        Обучение нормализаторов на обучающем префиксе.

        Args:
            features: Матрица (n, n_features)
            labels: Вектор меток (n,)
            feature_names: Имена колонок features
            label_method: 'minmax' или 'zscore'
            config_key: Отпечаток конфигурации-владельца
        """
        if features.shape[1] != len(feature_names):
            raise ValueError(f"Колонок {features.shape[1]} != признаков {len(feature_names)}")

        scalers = {}
        for i, name in enumerate(feature_names):
            scaler = make_scaler(get_feature_normalization(name))
            scaler.fit(features[:, i:i + 1])
            scalers[name] = scaler

        label_scaler = make_scaler(label_method)
        label_scaler.fit(np.asarray(labels, dtype=np.float64).reshape(-1, 1))
        return cls(list(feature_names), scalers, label_scaler, config_key)

    def check_binding(self, config_key: str, model_id: str) -> None:
        """Скейлеры можно применять только к своей паре (конфигурация, модель)"""
        if config_key != self.config_key:
            raise ScalerMismatchError(
                f"Скейлеры обучены для конфигурации {self.config_key}, получена {config_key}"
            )
        if model_id != self.model_id:
            raise ScalerMismatchError(
                f"Скейлеры принадлежат модели {self.model_id}, получена {model_id}"
            )

    def transform_features(self, features: np.ndarray) -> np.ndarray:
        if features.shape[1] != len(self.feature_names):
            raise ScalerMismatchError(
                f"Ожидалось {len(self.feature_names)} признаков, получено {features.shape[1]}"
            )
        out = np.empty_like(features, dtype=np.float64)
        for i, name in enumerate(self.feature_names):
            out[:, i] = self.feature_scalers[name].transform(features[:, i:i + 1])[:, 0]
        return out

    def transform_labels(self, labels: np.ndarray) -> np.ndarray:
        return self.label_scaler.transform(np.asarray(labels, dtype=np.float64).reshape(-1, 1))[:, 0]

    def inverse_labels(self, values: np.ndarray) -> np.ndarray:
        return self.label_scaler.inverse_transform(
            np.asarray(values, dtype=np.float64).reshape(-1, 1)
        )[:, 0]

    def to_dict(self) -> Dict:
        return {
            'feature_names': list(self.feature_names),
            'feature_scalers': {n: _scaler_to_dict(s) for n, s in self.feature_scalers.items()},
            'label_scaler': _scaler_to_dict(self.label_scaler),
            'config_key': self.config_key,
            'model_id': self.model_id,
        }

    @classmethod
    def from_dict(cls, payload: Dict) -> "ScalerSet":
        return cls(
            feature_names=list(payload['feature_names']),
            feature_scalers={n: _scaler_from_dict(p) for n, p in payload['feature_scalers'].items()},
            label_scaler=_scaler_from_dict(payload['label_scaler']),
            config_key=payload['config_key'],
            model_id=payload['model_id'],
        )
