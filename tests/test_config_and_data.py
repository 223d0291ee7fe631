"""
Юнит-тесты модели данных

Тестирование:
    - LstmConfig (валидация, сериализация, быстрый отказ по длине серии)
    - BarSeries (порядок, неизменяемость, префиксы)
    - Feature Engineering (реестр признаков, каузальность)
    - ScalerSet (привязка к конфигурации и модели)

Usage:
    pytest tests/test_config_and_data.py -v
"""

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.data.bars import BarSeries, BAR_COLUMNS
from src.data.loader import load_bar_series, clear_cache, InMemorySeriesProvider
from src.errors import ConfigurationError, InsufficientDataError, ScalerMismatchError
from src.features.engineering import (
    build_feature_frame,
    build_feature_matrix,
    get_feature_normalization,
    get_feature_names
)
from src.models.lstm_config import LstmConfig
from src.models.scalers import ScalerSet


# ==================== LSTM CONFIG ====================

class TestLstmConfig:
    """Тесты конфигурации модели"""

    def test_defaults_are_valid(self):
        config = LstmConfig()
        assert config.window_size >= 1
        assert len(config.features) > 0

    @pytest.mark.parametrize("changes", [
        {'window_size': 0},
        {'dropout': 1.0},
        {'learning_rate': 0.0},
        {'l2': -0.1},
        {'features': ()},
        {'optimizer': 'adagrad'},
        {'cv_mode': 'kfold'},
        {'walk_forward_splits': 0},
        {'features': ('close', 'not_a_feature')},
    ])
    def test_invalid_values_raise(self, changes):
        with pytest.raises(ConfigurationError):
            LstmConfig(**changes)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            LstmConfig(embargo_bars=-1)

    def test_frozen(self):
        config = LstmConfig()
        with pytest.raises(Exception):
            config.window_size = 99

    def test_features_list_becomes_tuple(self):
        config = LstmConfig(features=['close', 'rsi'])
        assert config.features == ('close', 'rsi')
        hash(config)

    def test_dict_round_trip_keeps_fingerprint(self):
        config = LstmConfig(window_size=33, features=('close', 'atr'), seed=7)
        restored = LstmConfig.from_dict(config.to_dict())
        assert restored == config
        assert restored.fingerprint() == config.fingerprint()

    def test_fingerprint_differs_per_config(self):
        assert LstmConfig(seed=1).fingerprint() != LstmConfig(seed=2).fingerprint()

    def test_series_length_fail_fast(self):
        config = LstmConfig(window_size=20, embargo_bars=5)
        config.require_series_length(26)
        with pytest.raises(InsufficientDataError) as exc:
            config.require_series_length(25)
        assert exc.value.required == 26

    def test_label_normalization_auto(self):
        assert LstmConfig(swing_trade_type='mean_reversion').label_normalization == 'zscore'
        assert LstmConfig(swing_trade_type='range').label_normalization == 'minmax'
        assert LstmConfig(normalization_method='zscore').label_normalization == 'zscore'


# ==================== BAR SERIES ====================

class TestBarSeries:
    """Тесты серии баров"""

    def test_sorts_by_time_and_fills_optional_columns(self):
        idx = pd.to_datetime(['2021-01-03', '2021-01-01', '2021-01-02'])
        frame = pd.DataFrame({'open': [3, 1, 2], 'high': [3, 1, 2],
                              'low': [3, 1, 2], 'close': [3.0, 1.0, 2.0]}, index=idx)
        series = BarSeries("ABC", frame)

        assert list(series.close) == [1.0, 2.0, 3.0]
        assert list(series.to_frame().columns) == BAR_COLUMNS
        assert np.allclose(series.column('vwap'), [1.0, 2.0, 3.0])

    def test_arrays_are_read_only(self, sine_series):
        with pytest.raises(ValueError):
            sine_series.close[0] = 1.0

    def test_frame_copy_does_not_leak(self, sine_series):
        frame = sine_series.to_frame()
        frame['close'] = 0.0
        assert sine_series.close[0] > 0

    def test_rejects_non_positive_prices(self):
        with pytest.raises(ValueError):
            BarSeries.from_arrays("BAD", np.array([1.0, 0.0, 2.0]))

    def test_missing_columns(self):
        with pytest.raises(ValueError):
            BarSeries("BAD", pd.DataFrame({'close': [1.0, 2.0]}))

    def test_head(self, sine_series):
        prefix = sine_series.head(100)
        assert len(prefix) == 100
        assert np.array_equal(prefix.close, sine_series.close[:100])
        assert sine_series.head(len(sine_series)) is sine_series
        with pytest.raises(InsufficientDataError):
            sine_series.head(0)


class TestLoader:
    """Тесты загрузки CSV"""

    def test_standard_csv(self, tmp_path):
        clear_cache()
        csv = tmp_path / "EURUSD.csv"
        pd.DataFrame({
            'time': pd.date_range('2022-01-01', periods=5, freq='D').astype(str),
            'open': [1, 2, 3, 4, 5], 'high': [1, 2, 3, 4, 5],
            'low': [1, 2, 3, 4, 5], 'close': [1, 2, 3, 4, 5], 'volume': [10] * 5
        }).to_csv(csv, index=False)

        series = load_bar_series("EURUSD", csv)
        assert len(series) == 5
        assert series.close[-1] == 5.0
        assert load_bar_series("EURUSD") is series
        clear_cache()

    def test_missing_file(self, tmp_path):
        clear_cache()
        with pytest.raises(FileNotFoundError):
            load_bar_series("NOPE", tmp_path / "NOPE.csv")

    def test_in_memory_provider(self, sine_series):
        provider = InMemorySeriesProvider({'TEST': sine_series})
        assert provider.get_bar_series('TEST') is sine_series
        with pytest.raises(KeyError):
            provider.get_bar_series('OTHER')


# ==================== FEATURES ====================

class TestFeatures:
    """Тесты Feature Engineering"""

    def test_all_registered_features_resolve(self, random_walk_series):
        names = get_feature_names()
        frame = build_feature_frame(random_walk_series, names)

        assert list(frame.columns) == names
        assert len(frame) == len(random_walk_series)
        assert np.isfinite(frame.to_numpy()).all()

    def test_unknown_feature_raises(self, sine_series):
        with pytest.raises(ConfigurationError):
            build_feature_matrix(sine_series, ['close', 'not_a_feature'])

    def test_order_is_preserved(self, sine_series):
        matrix = build_feature_matrix(sine_series, ['rsi', 'close'])
        assert np.allclose(matrix[:, 1], sine_series.close)

    def test_features_are_causal(self, random_walk_series):
        names = ['rsi', 'sma_20', 'ema_26', 'macd', 'atr', 'bollinger_width', 'cci', 'obv']
        full = build_feature_matrix(random_walk_series, names)
        prefix = build_feature_matrix(random_walk_series.head(150), names)
        assert np.allclose(full[:150], prefix)

    def test_rsi_range(self, random_walk_series):
        rsi = build_feature_matrix(random_walk_series, ['rsi'])[:, 0]
        assert rsi.min() >= 0 and rsi.max() <= 100

    def test_normalization_type(self):
        assert get_feature_normalization('rsi') == 'zscore'
        assert get_feature_normalization('macd') == 'zscore'
        assert get_feature_normalization('close') == 'minmax'
        assert get_feature_normalization('volume') == 'minmax'


# ==================== SCALERS ====================

class TestScalerSet:
    """Тесты нормализаторов"""

    @pytest.fixture
    def fitted(self):
        rng = np.random.default_rng(0)
        features = np.column_stack([rng.normal(100, 5, 200), rng.normal(50, 10, 200)])
        labels = rng.normal(0, 0.01, 200)
        return ScalerSet.fit(features, labels, ['close', 'rsi'], 'minmax', 'cfg-1'), features

    def test_per_feature_methods(self, fitted):
        scalers, features = fitted
        scaled = scalers.transform_features(features)
        assert scaled[:, 0].min() == pytest.approx(0.0)
        assert scaled[:, 0].max() == pytest.approx(1.0)
        assert scaled[:, 1].mean() == pytest.approx(0.0, abs=1e-9)

    def test_binding(self, fitted):
        scalers, _ = fitted
        scalers.check_binding('cfg-1', scalers.model_id)
        with pytest.raises(ScalerMismatchError):
            scalers.check_binding('cfg-2', scalers.model_id)
        with pytest.raises(ScalerMismatchError):
            scalers.check_binding('cfg-1', 'other-model')

    def test_wrong_feature_count(self, fitted):
        scalers, features = fitted
        with pytest.raises(ScalerMismatchError):
            scalers.transform_features(features[:, :1])

    def test_dict_round_trip(self, fitted):
        scalers, features = fitted
        restored = ScalerSet.from_dict(scalers.to_dict())
        assert np.allclose(restored.transform_features(features), scalers.transform_features(features))
        values = np.array([0.1, 0.5, 0.9])
        assert np.allclose(restored.inverse_labels(values), scalers.inverse_labels(values))
        assert restored.model_id == scalers.model_id
