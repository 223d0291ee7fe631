"""
Тесты хранилищ и мониторинга прогресса

Usage:
    pytest tests/test_persistence_and_monitoring.py -v
"""

import json
import time

import pytest
import numpy as np

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.errors import PersistenceFailure
from src.models.lstm_config import LstmConfig
from src.models.predictor import TorchLstmPredictor
from src.monitoring.progress import (
    ExceptionReport,
    ProgressHeartbeat,
    ProgressRegistry,
    TuningProgress,
    STATUS_DONE,
    STATUS_RUNNING,
    append_progress_metrics,
    build_progress_metrics
)
from src.persistence.stores import FileHyperparameterStore, FileModelStore, InMemoryModelStore


# ==================== HYPERPARAMETERS ====================

class TestFileHyperparameterStore:
    """Тесты хранилища гиперпараметров"""

    def test_round_trip(self, tmp_path, base_config):
        store = FileHyperparameterStore(tmp_path)
        assert store.load("XAUUSD") is None

        store.save("XAUUSD", base_config)

        assert (tmp_path / "hyperparams" / "XAUUSD.json").exists()
        assert store.load("XAUUSD") == base_config

    def test_metrics_audit_appends(self, tmp_path, base_config):
        store = FileHyperparameterStore(tmp_path)
        store.save_metrics("XAUUSD", base_config, {'business_score': 1.5, 'profit_factor': None})
        store.save_metrics("XAUUSD", base_config.with_updates(hidden_units=32), {'business_score': 0.5})

        records = store.load_metrics("XAUUSD")
        assert len(records) == 2
        assert records[0]['metrics']['business_score'] == 1.5
        assert records[1]['config']['hidden_units'] == 32
        assert store.load_metrics("EURUSD") == []

    def test_unwritable_location(self, tmp_path, base_config):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(PersistenceFailure):
            FileHyperparameterStore(blocker).save("XAUUSD", base_config)


# ==================== MODELS ====================

class TestFileModelStore:
    """Тесты хранилища моделей"""

    @pytest.fixture
    def trained(self, sine_series):
        predictor = TorchLstmPredictor(device='cpu')
        config = LstmConfig(window_size=10, hidden_units=8, num_layers=1, dropout=0.0,
                            num_epochs=1, batch_size=16, horizon_bars=3,
                            features=('close', 'rsi', 'atr'), seed=3)
        model, scalers = predictor.train(sine_series.head(150), config)
        return predictor, config, model, scalers

    def test_round_trip(self, tmp_path, sine_series, trained):
        predictor, config, model, scalers = trained
        store = FileModelStore(tmp_path, predictor)
        assert not store.exists("XAUUSD")

        store.save("XAUUSD", model, config, scalers)

        assert store.exists("XAUUSD")
        assert store.load_config("XAUUSD") == config

        loaded_config, loaded_model, loaded_scalers = store.load("XAUUSD")
        original = predictor.predict_range(sine_series, config, model, scalers, 150, 170)
        restored = predictor.predict_range(sine_series, loaded_config, loaded_model,
                                           loaded_scalers, 150, 170)
        assert np.allclose(original, restored, atol=1e-6)

    def test_incomplete_artifact_is_not_found(self, tmp_path, trained):
        predictor, config, model, scalers = trained
        store = FileModelStore(tmp_path, predictor)
        store.save("XAUUSD", model, config, scalers)
        (tmp_path / "XAUUSD" / FileModelStore.CONFIG_FILE).unlink()

        assert not store.exists("XAUUSD")
        with pytest.raises(FileNotFoundError):
            store.load("XAUUSD")

    def test_released_model_cannot_be_saved(self, tmp_path, trained):
        predictor, config, model, scalers = trained
        predictor.release(model)

        with pytest.raises(PersistenceFailure):
            FileModelStore(tmp_path, predictor).save("XAUUSD", model, config, scalers)


class TestInMemoryModelStore:
    """Хранилище держит собственную копию модели"""

    def test_saved_model_survives_release(self, sine_series):
        predictor = TorchLstmPredictor(device='cpu')
        config = LstmConfig(window_size=10, hidden_units=8, num_layers=1, dropout=0.0,
                            num_epochs=1, batch_size=16, horizon_bars=3,
                            features=('close', 'rsi'), seed=5)
        model, scalers = predictor.train(sine_series.head(150), config)
        expected = predictor.predict_range(sine_series, config, model, scalers, 150, 170)

        store = InMemoryModelStore()
        store.save("XAUUSD", model, config, scalers)
        predictor.release(model)

        loaded_config, loaded_model, loaded_scalers = store.load("XAUUSD")
        assert model.released
        assert not loaded_model.released
        restored = predictor.predict_range(sine_series, loaded_config, loaded_model,
                                           loaded_scalers, 150, 170)
        assert np.allclose(expected, restored, atol=1e-9)

    def test_missing_symbol(self):
        store = InMemoryModelStore()
        assert not store.exists("XAUUSD")
        assert store.load_config("XAUUSD") is None
        with pytest.raises(KeyError):
            store.load("XAUUSD")


# ==================== MONITORING ====================

class TestProgress:
    """Тесты счетчиков прогресса"""

    def test_counters(self):
        progress = TuningProgress("XAUUSD", total_configs=3, threads_used=2)
        progress.mark_tested(100)
        progress.mark_tested(50, failed=True)

        snap = progress.snapshot()
        assert snap.tested_configs == 2
        assert snap.failed_configs == 1
        assert snap.cumulative_config_ms == 150
        assert snap.status == STATUS_RUNNING

        progress.finish(STATUS_DONE)
        assert progress.snapshot().status == STATUS_DONE
        assert progress.snapshot().end_time_ms >= snap.start_time_ms
        # снимок не меняется задним числом
        assert snap.status == STATUS_RUNNING

    def test_plan_can_grow(self):
        progress = TuningProgress("XAUUSD", total_configs=3, threads_used=1)
        progress.add_configs(4)
        progress.add_configs(-2)
        assert progress.snapshot().total_configs == 7

    def test_registry(self):
        registry = ProgressRegistry()
        registry.start("XAUUSD", 2, 1)
        registry.start("EURUSD", 4, 2).finish(STATUS_DONE)

        assert set(registry.snapshot()) == {"XAUUSD", "EURUSD"}
        assert [s.symbol for s in registry.running()] == ["XAUUSD"]
        assert registry.get("GBPUSD") is None

    def test_progress_metrics_record(self):
        progress = TuningProgress("XAUUSD", total_configs=2, threads_used=3)
        progress.mark_tested(40)
        progress.mark_tested(60)
        progress.finish(STATUS_DONE)

        record = build_progress_metrics(progress.snapshot())
        assert record['symbol'] == "XAUUSD"
        assert record['testedConfigs'] == 2
        assert record['meanConfigDurationMs'] == pytest.approx(50.0)
        assert record['threadsUsed'] == 3
        assert record['configsPerSecond'] >= 0.0

    def test_append_progress_metrics(self, tmp_path):
        path = tmp_path / "logs" / "progress_metrics.json"
        append_progress_metrics(path, {'symbol': 'A'})
        append_progress_metrics(path, {'symbol': 'B'})

        with open(path, 'r', encoding='utf-8') as f:
            assert [r['symbol'] for r in json.load(f)] == ['A', 'B']

    def test_corrupt_progress_file_is_restarted(self, tmp_path):
        path = tmp_path / "progress_metrics.json"
        path.write_text("{broken")
        append_progress_metrics(path, {'symbol': 'A'})

        with open(path, 'r', encoding='utf-8') as f:
            assert json.load(f) == [{'symbol': 'A'}]


class TestExceptionReport:
    """Тесты журнала ошибок"""

    def test_record(self, base_config):
        report = ExceptionReport()
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            report.record("XAUUSD", base_config, e)
        report.record("EURUSD", None, ValueError("bad"))

        assert len(report) == 2
        entry = report.for_symbol("XAUUSD")[0]
        assert entry.message == "RuntimeError: boom"
        assert "raise RuntimeError" in entry.stack_trace
        assert entry.to_dict()['config']['hidden_units'] == base_config.hidden_units
        assert report.for_symbol("EURUSD")[0].to_dict()['config'] is None


class TestHeartbeat:
    """Тесты heartbeat-потока"""

    def test_start_and_stop(self):
        registry = ProgressRegistry()
        registry.start("XAUUSD", 10, 1).mark_tested(5)

        with ProgressHeartbeat(registry, interval_s=0.01) as heartbeat:
            time.sleep(0.05)
            assert heartbeat._thread is not None
        assert heartbeat._thread is None

    def test_beat_without_running_symbols(self):
        ProgressHeartbeat(ProgressRegistry()).beat()
