"""
Тесты генерации сетки и губернатора ресурсов

Usage:
    pytest tests/test_grid_and_governor.py -v
"""

from collections import Counter

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.hyperparameters import GovernorConfig, GpuBatchConfig, GridDefaults
from src.errors import ConfigurationError
from src.models.lstm_config import LstmConfig
from src.tuning.governor import ResourceGovernor
from src.tuning.grid import (
    generate_grid,
    generate_random_grid,
    generate_optimized_grid,
    generate_swing_trade_grid,
    generate_micro_grid,
    split_budget
)


# ==================== GRID ====================

class TestCartesianGrid:
    """Тесты полного перебора"""

    def test_size_and_order(self):
        grid = generate_grid({'window_size': [20, 30], 'hidden_units': [16, 32, 64]})

        assert len(grid) == 6
        assert [(c.window_size, c.hidden_units) for c in grid] == [
            (20, 16), (20, 32), (20, 64), (30, 16), (30, 32), (30, 64)
        ]

    def test_base_fields_are_kept(self):
        base = LstmConfig(num_epochs=3, embargo_bars=4)
        grid = generate_grid({'dropout': [0.1, 0.3]}, base)
        assert all(c.num_epochs == 3 and c.embargo_bars == 4 for c in grid)

    def test_feature_variants(self):
        grid = generate_grid({'features': [('close',), ['close', 'rsi']]})
        assert [c.features for c in grid] == [('close',), ('close', 'rsi')]

    def test_default_swing_grid(self):
        defaults = GridDefaults()
        grid = generate_swing_trade_grid(defaults)

        assert len(grid) == 3 * 2 * 2 * 2 * 1 * 2 * 2 * 1 * 2
        assert grid[0].swing_trade_type == 'range'
        assert grid[1].swing_trade_type == 'mean_reversion'
        assert len(set(grid)) == len(grid)

    @pytest.mark.parametrize("axes", [
        {},
        {'not_a_field': [1]},
        {'window_size': []},
        {'window_size': [0]},
        {'features': [('close', 'close')]},
        {'features': [('close', 'not_a_feature')]},
    ])
    def test_invalid_axes(self, axes):
        with pytest.raises(ConfigurationError):
            generate_grid(axes)


class TestRandomGrid:
    """Тесты случайной выборки"""

    AXES = {'window_size': [20, 30, 40], 'hidden_units': [16, 32], 'dropout': [0.1, 0.2]}

    def test_reproducible(self):
        assert generate_random_grid(self.AXES, 10, seed=3) == generate_random_grid(self.AXES, 10, seed=3)

    def test_values_from_axes(self):
        grid = generate_random_grid(self.AXES, 25, seed=11)
        assert len(grid) == 25
        for c in grid:
            assert c.window_size in self.AXES['window_size']
            assert c.hidden_units in self.AXES['hidden_units']

    def test_swing_grid_sampling(self):
        defaults = GridDefaults(random_samples=7, seed=5)
        assert len(generate_swing_trade_grid(defaults)) == 7

    def test_invalid_size(self):
        with pytest.raises(ConfigurationError):
            generate_random_grid(self.AXES, 0, seed=1)


class TestOptimizedGrid:
    """Тесты сетки 40/40/20"""

    def test_budget(self):
        assert split_budget(50) == {'exploit': 20, 'explore': 20, 'innovate': 10}
        assert split_budget(1) == {'exploit': 1, 'explore': 1, 'innovate': 1}
        assert sum(split_budget(7).values()) == 7

    def test_composition_and_seeds(self):
        grid = generate_optimized_grid(50, seed=42)

        assert len(grid) == 50
        assert [c.seed for c in grid] == list(range(42, 92))
        assert all(c.cv_mode == 'split' for c in grid)

        # категории различаются константами скора
        groups = Counter((c.profit_factor_cap, c.drawdown_gamma) for c in grid)
        assert groups[(4.5, 1.4)] == 20
        assert groups[(5.0, 1.3)] == 20
        assert groups[(5.0, 1.2)] == 10

    def test_reproducible(self):
        assert generate_optimized_grid(20, seed=1) == generate_optimized_grid(20, seed=1)
        assert generate_optimized_grid(20, seed=1) != generate_optimized_grid(20, seed=2)

    def test_ranges(self):
        for c in generate_optimized_grid(50, seed=0):
            assert 1.5e-4 <= c.learning_rate <= 2.0e-3
            assert 0.0 < c.dropout <= 0.2
            assert not (c.attention and c.bidirectional)

    def test_minimum_size(self):
        assert len(generate_optimized_grid(1, seed=0)) == 3
        with pytest.raises(ConfigurationError):
            generate_optimized_grid(0, seed=0)


class TestMicroGrid:
    """Тесты микро-сетки второй фазы"""

    def test_neighbourhood_of_one_base(self):
        base = LstmConfig(hidden_units=64, learning_rate=0.001, dropout=0.2)
        grid = generate_micro_grid([base])

        # 3 x 3 x 3 вариаций, сама база тоже входит
        assert len(grid) == 27
        assert base in grid
        assert {c.hidden_units for c in grid} == {48, 64, 80}
        assert {c.dropout for c in grid} == {0.15, 0.2, 0.24}
        assert min(c.learning_rate for c in grid) == pytest.approx(0.0009)
        assert max(c.learning_rate for c in grid) == pytest.approx(0.00115)

    def test_bounds_and_exclusion(self):
        base = LstmConfig(hidden_units=16, learning_rate=0.019, dropout=0.0)
        grid = generate_micro_grid([base], exclude=[base])

        assert all(c.hidden_units >= 16 for c in grid)
        assert all(0.05 <= c.dropout <= 0.40 for c in grid)
        assert all(c.learning_rate <= 0.02 for c in grid)
        assert base not in grid

    def test_overlapping_bases_are_deduplicated(self):
        a = LstmConfig(hidden_units=64)
        b = LstmConfig(hidden_units=80)
        grid = generate_micro_grid([a, b])

        fingerprints = [c.fingerprint() for c in grid]
        assert len(fingerprints) == len(set(fingerprints))
        # hidden 64 и 80 общие для обеих баз
        assert len(grid) == 27 + 9


# ==================== GOVERNOR ====================

def make_governor(gpu=False, cpus=4, reader=None, sleep=None, **overrides):
    config = GovernorConfig(**overrides)
    return ResourceGovernor(config, GpuBatchConfig(), gpu_available=gpu, cpu_count=cpus,
                            memory_reader=reader or (lambda: 0.1),
                            sleep=sleep or (lambda s: None))


class TestParallelism:
    """Тесты числа потоков"""

    @pytest.mark.parametrize("gpu,cpus,overrides,expected", [
        (False, 16, {}, 8),
        (False, 4, {}, 3),
        (False, 1, {}, 1),
        (True, 16, {}, 4),
        (True, 2, {}, 1),
        (False, 16, {'max_threads': 2}, 2),
        (False, 16, {'max_threads': 20}, 8),
    ])
    def test_effective_parallelism(self, gpu, cpus, overrides, expected):
        assert make_governor(gpu=gpu, cpus=cpus, **overrides).effective_parallelism() == expected

    def test_pool_size(self):
        governor = make_governor(cpus=4)
        assert governor.pool_size(2) == 2
        assert governor.pool_size(100) == 3
        assert governor.pool_size(0) == 1


class TestMemoryGate:
    """Тесты ожидания памяти"""

    def test_waits_until_below_threshold(self):
        readings = iter([0.9, 0.85, 0.5])
        sleeps = []
        governor = make_governor(reader=lambda: next(readings), sleep=sleeps.append,
                                 memory_threshold=0.8, poll_interval_s=5.0)

        assert governor.wait_until_memory_available() == pytest.approx(10.0)
        assert sleeps == [5.0, 5.0]

    def test_no_wait_when_memory_low(self):
        sleeps = []
        governor = make_governor(reader=lambda: 0.3, sleep=sleeps.append)
        assert governor.wait_until_memory_available() == 0.0
        assert sleeps == []

    def test_max_wait(self):
        governor = make_governor(reader=lambda: 0.99, poll_interval_s=2.0)
        assert governor.wait_until_memory_available(max_wait_s=6.0) == pytest.approx(6.0)


class TestGpu:
    """Тесты GPU-ограничений"""

    def test_batch_scaling(self):
        governor = make_governor(gpu=True)
        config = LstmConfig(batch_size=32, learning_rate=0.001)

        scaled = governor.scale_batch_for_gpu(config)

        assert scaled.batch_size == 128
        assert scaled.learning_rate == pytest.approx(0.00025)

    def test_no_scaling_without_gpu(self):
        config = LstmConfig(batch_size=32)
        assert make_governor(gpu=False).scale_batch_for_gpu(config) is config

    def test_large_batch_unchanged(self):
        config = LstmConfig(batch_size=256)
        assert make_governor(gpu=True).scale_batch_for_gpu(config) is config

    def test_gpu_slot_limits_concurrency(self):
        governor = make_governor(gpu=True, gpu_max_concurrency=1)
        with governor.gpu_slot():
            assert not governor._gpu_semaphore.acquire(blocking=False)
        assert governor._gpu_semaphore.acquire(blocking=False)
        governor._gpu_semaphore.release()
