"""
Тесты LSTM-предиктора на PyTorch

Маленькие сети на CPU: 1 слой, 2 эпохи, без dropout (кроме тестов детерминизма).

Usage:
    pytest tests/test_predictor.py -v
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
import numpy as np
import torch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.errors import InsufficientDataError, ScalerMismatchError
from src.models.lstm_config import LstmConfig
from src.models.predictor import Predictor, TorchLstmPredictor, _sliding_windows, set_global_seeds


@pytest.fixture
def tiny_config():
    return LstmConfig(window_size=10, hidden_units=8, num_layers=1, dropout=0.0,
                      num_epochs=2, batch_size=16, patience=1, horizon_bars=3,
                      features=('close', 'rsi'), seed=7)


@pytest.fixture
def predictor():
    return TorchLstmPredictor(device='cpu')


class TestSlidingWindows:

    def test_shape_and_alignment(self):
        matrix = np.arange(12, dtype=float).reshape(6, 2)
        windows = _sliding_windows(matrix, 3)

        assert windows.shape == (4, 3, 2)
        # окно i заканчивается на баре i + window - 1
        assert np.array_equal(windows[0], matrix[0:3])
        assert np.array_equal(windows[-1], matrix[3:6])


class TestTraining:
    """Тесты обучения"""

    def test_train_and_predict(self, predictor, sine_series, tiny_config):
        train = sine_series.head(200)
        model, scalers = predictor.train(train, tiny_config)

        assert model.config_key == tiny_config.fingerprint()
        assert model.model_id == scalers.model_id
        assert 1 <= len(model.history['train_loss']) <= tiny_config.num_epochs

        preds = predictor.predict_range(sine_series, tiny_config, model, scalers, 200, 260)
        assert preds.shape == (60,)
        assert np.isfinite(preds).all()
        assert (preds > 0).all()

    def test_same_seed_same_model(self, predictor, sine_series, tiny_config):
        train = sine_series.head(200)
        m1, s1 = predictor.train(train, tiny_config)
        m2, s2 = predictor.train(train, tiny_config)

        p1 = predictor.predict_range(sine_series, tiny_config, m1, s1, 200, 230)
        p2 = predictor.predict_range(sine_series, tiny_config, m2, s2, 200, 230)
        assert np.allclose(p1, p2, atol=1e-6)

    def test_batched_range_matches_prefix_loop(self, predictor, sine_series, tiny_config):
        model, scalers = predictor.train(sine_series.head(200), tiny_config)

        batched = predictor.predict_range(sine_series, tiny_config, model, scalers, 210, 220)
        looped = Predictor.predict_range(predictor, sine_series, tiny_config, model, scalers, 210, 220)
        assert np.allclose(batched, looped, atol=1e-6)

    def test_predict_next_uses_last_bar(self, predictor, sine_series, tiny_config):
        model, scalers = predictor.train(sine_series.head(200), tiny_config)
        history = sine_series.head(250)

        value = predictor.predict_next(history, tiny_config, model, scalers)
        expected = predictor.predict_range(sine_series, tiny_config, model, scalers, 249, 250)[0]
        assert value == pytest.approx(expected, abs=1e-6)

    @pytest.mark.parametrize("changes", [
        {'optimizer': 'adamw'},
        {'optimizer': 'sgd'},
        {'optimizer': 'rmsprop'},
        {'attention': True},
        {'bidirectional': True, 'num_layers': 2, 'dropout': 0.1},
        {'l1': 1e-4, 'cv_mode': 'timeseries', 'k_folds': 4},
        {'swing_trade_type': 'mean_reversion'},
    ])
    def test_variants_train(self, predictor, sine_series, tiny_config, changes):
        config = tiny_config.with_updates(num_epochs=1, **changes)
        model, scalers = predictor.train(sine_series.head(150), config)
        preds = predictor.predict_range(sine_series, config, model, scalers, 150, 160)
        assert np.isfinite(preds).all()

    def test_short_series(self, predictor, sine_series, tiny_config):
        with pytest.raises(InsufficientDataError):
            predictor.train(sine_series.head(12), tiny_config)


class TestBinding:
    """Модель применяется только со своими скейлерами"""

    def test_foreign_scalers(self, predictor, sine_series, tiny_config):
        model, _ = predictor.train(sine_series.head(150), tiny_config)
        _, other_scalers = predictor.train(sine_series.head(150), tiny_config)

        with pytest.raises(ScalerMismatchError):
            predictor.predict_range(sine_series, tiny_config, model, other_scalers, 150, 160)

    def test_foreign_config(self, predictor, sine_series, tiny_config):
        model, scalers = predictor.train(sine_series.head(150), tiny_config)
        with pytest.raises(ScalerMismatchError):
            predictor.predict_range(sine_series, tiny_config.with_updates(seed=8),
                                    model, scalers, 150, 160)

    def test_released_model(self, predictor, sine_series, tiny_config):
        model, scalers = predictor.train(sine_series.head(150), tiny_config)
        predictor.release(model)

        assert model.released
        with pytest.raises(ScalerMismatchError):
            predictor.predict_range(sine_series, tiny_config, model, scalers, 150, 160)

    def test_range_before_first_window(self, predictor, sine_series, tiny_config):
        model, scalers = predictor.train(sine_series.head(150), tiny_config)
        with pytest.raises(InsufficientDataError):
            predictor.predict_range(sine_series, tiny_config, model, scalers, 5, 20)


class TestDeterminism:
    """Результат обучения не зависит от соседних потоков и глобального RNG"""

    @pytest.fixture
    def dropout_config(self, tiny_config):
        return tiny_config.with_updates(num_layers=2, dropout=0.5, num_epochs=3, seed=1)

    def _train_and_predict(self, predictor, series, config):
        model, scalers = predictor.train(series.head(200), config)
        return predictor.predict_range(series, config, model, scalers, 200, 240)

    def test_sibling_training_does_not_change_result(self, predictor, sine_series, dropout_config):
        sequential = self._train_and_predict(predictor, sine_series, dropout_config)

        sibling = dropout_config.with_updates(seed=2, hidden_units=12)
        with ThreadPoolExecutor(max_workers=2) as executor:
            target = executor.submit(self._train_and_predict, predictor, sine_series, dropout_config)
            other = executor.submit(self._train_and_predict, predictor, sine_series, sibling)
            concurrent = target.result()
            other.result()

        assert np.allclose(sequential, concurrent, atol=1e-9)

    def test_global_reseed_does_not_change_result(self, predictor, sine_series, dropout_config):
        set_global_seeds(123)
        first = self._train_and_predict(predictor, sine_series, dropout_config)
        set_global_seeds(999)
        torch.rand(1000)
        second = self._train_and_predict(predictor, sine_series, dropout_config)

        assert np.allclose(first, second, atol=1e-9)

    def test_dropout_inactive_at_inference(self, predictor, sine_series, dropout_config):
        model, scalers = predictor.train(sine_series.head(200), dropout_config)
        p1 = predictor.predict_range(sine_series, dropout_config, model, scalers, 200, 220)
        p2 = predictor.predict_range(sine_series, dropout_config, model, scalers, 200, 220)
        assert np.array_equal(p1, p2)
