"""
Общие фикстуры и заглушки для тестов тюнинга
"""

import sys
import uuid
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from sklearn.preprocessing import MinMaxScaler

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.hyperparameters import HyperParameters
from src.data.bars import BarSeries
from src.errors import TrainingFailure
from src.models.lstm_config import LstmConfig
from src.models.predictor import Predictor, TrainedModel
from src.models.scalers import ScalerSet
from src.tuning.governor import ResourceGovernor


class StubPredictor(Predictor):
    """
    Детерминированный предиктор без обучения.

    modes: {hidden_units: 'oracle' | 'inverse' | 'flat'}
        oracle  - прогноз равен реальной цене через horizon_bars
        inverse - зеркальный прогноз (сделки против движения)
        flat    - прогноз равен текущей цене (сделок нет)
    fail: hidden_units, для которых train бросает TrainingFailure
    oracle_until: после этого бара oracle переходит в flat
    """

    def __init__(self, modes=None, fail=(), oracle_until=None):
        self.modes = modes or {}
        self.fail = set(fail)
        self.oracle_until = oracle_until
        self.train_calls = []
        self.released = 0
        self.resources_released = 0

    def train(self, series, config):
        self.train_calls.append((config.hidden_units, len(series)))
        if config.hidden_units in self.fail:
            raise TrainingFailure(f"stub failure for hidden={config.hidden_units}")
        key = config.fingerprint()
        model_id = uuid.uuid4().hex
        model = TrainedModel(network={'mode': self.modes.get(config.hidden_units, 'oracle')},
                             config_key=key, model_id=model_id,
                             n_features=len(config.features))
        scalers = ScalerSet(feature_names=list(config.features), feature_scalers={},
                            label_scaler=MinMaxScaler(), config_key=key, model_id=model_id)
        return model, scalers

    def predict_range(self, series, config, model, scalers, start, end):
        scalers.check_binding(config.fingerprint(), model.model_id)
        close = series.close
        h = config.horizon_bars
        out = np.empty(end - start)
        for i, t in enumerate(range(start, end)):
            future = close[t + h] if t + h < len(close) else close[t]
            mode = model.network['mode']
            if self.oracle_until is not None and t >= self.oracle_until:
                mode = 'flat'
            if mode == 'oracle':
                out[i] = future
            elif mode == 'inverse':
                out[i] = 2 * close[t] - future
            else:
                out[i] = close[t]
        return out

    def predict_next(self, series, config, model, scalers):
        n = len(series)
        return float(self.predict_range(series, config, model, scalers, n - 1, n)[0])

    def release(self, model):
        self.released += 1
        super().release(model)

    def release_resources(self):
        self.resources_released += 1


def make_sine_series(symbol: str = "TEST", n: int = 500, period: float = 40.0) -> BarSeries:
    t = np.arange(n)
    close = 100.0 + 10.0 * np.sin(2 * np.pi * t / period)
    frame = pd.DataFrame({
        'open': close,
        'high': close + 0.5,
        'low': close - 0.5,
        'close': close,
        'volume': 1000.0 + 100.0 * np.cos(2 * np.pi * t / 7),
    }, index=pd.date_range('2021-01-01', periods=n, freq='D'))
    return BarSeries(symbol, frame)


@pytest.fixture
def sine_series():
    return make_sine_series()


@pytest.fixture
def random_walk_series():
    """Случайное блуждание с OHLCV"""
    rng = np.random.default_rng(7)
    n = 300
    close = 1800 + np.cumsum(rng.normal(0, 5, n))
    frame = pd.DataFrame({
        'open': close * 0.999,
        'high': close * 1.002,
        'low': close * 0.998,
        'close': close,
        'volume': rng.integers(100, 1000, n).astype(float),
    }, index=pd.date_range('2020-01-01', periods=n, freq='D'))
    return BarSeries("XAUUSD", frame)


@pytest.fixture
def stub_predictor_factory():
    return StubPredictor


@pytest.fixture
def base_config():
    return LstmConfig(window_size=20, hidden_units=16, horizon_bars=5,
                      walk_forward_splits=5, embargo_bars=2, features=('close', 'rsi'))


@pytest.fixture
def params():
    """Параметры без записи журнала прогресса"""
    p = HyperParameters()
    p.persistence.write_progress_metrics = False
    p.monitoring.heartbeat_enabled = False
    return p


@pytest.fixture
def calm_governor(params):
    """Губернатор без GPU и с низкой загрузкой памяти"""
    return ResourceGovernor(params.governor, params.gpu_batch, gpu_available=False,
                            cpu_count=4, memory_reader=lambda: 0.1, sleep=lambda s: None)
