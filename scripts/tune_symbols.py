#!/usr/bin/env python3
"""
Тюнинг гиперпараметров LSTM для списка инструментов

Интегрирует:
    - Загрузку баров из CSV (data/raw/<symbol>.csv)
    - Сетку конфигураций (по умолчанию или оптимизированную 40/40/20)
    - Walk-Forward оценку и бизнес-скор
    - Сохранение лучших гиперпараметров и моделей

Usage:
    python scripts/tune_symbols.py [--config config/tuning_config.yaml] [--symbols XAUUSD EURUSD]
"""

import sys
import argparse
from pathlib import Path

import yaml

# Добавляем корень проекта в путь
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.hyperparameters import load_from_yaml
from config.paths import PATHS
from src.data.loader import CsvSeriesProvider
from src.models.lstm_config import LstmConfig
from src.backtesting.tester import print_backtest_report
from src.models.predictor import TorchLstmPredictor, set_global_seeds
from src.persistence.stores import FileHyperparameterStore, FileModelStore
from src.tuning.governor import ResourceGovernor
from src.tuning.grid import generate_optimized_grid, generate_swing_trade_grid
from src.tuning.orchestrator import TuningOrchestrator
from src.tuning.scheduler import MultiSymbolScheduler
from utils.logger import LOGGER


def parse_args():
    """Парсинг аргументов командной строки"""
    parser = argparse.ArgumentParser(
        description='Тюнинг гиперпараметров LSTM с Walk-Forward оценкой'
    )
    parser.add_argument(
        '--config',
        type=str,
        default='config/tuning_config.yaml',
        help='Путь к конфигурации'
    )
    parser.add_argument(
        '--symbols',
        nargs='+',
        default=None,
        help='Инструменты (по умолчанию из конфигурации)'
    )
    parser.add_argument(
        '--grid',
        choices=['defaults', 'optimized'],
        default=None,
        help='Тип сетки конфигураций'
    )
    parser.add_argument(
        '--grid-size',
        type=int,
        default=None,
        help='Размер оптимизированной сетки'
    )
    parser.add_argument(
        '--data-dir',
        type=str,
        default=None,
        help='Директория с CSV (по умолчанию data/raw)'
    )
    return parser.parse_args()


def load_tuning_section(config_path: Path) -> dict:
    """Секция tuning из YAML"""
    with open(config_path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f) or {}
    return raw.get('tuning', {}) or {}


def build_grid(params, tuning: dict, grid_mode: str, grid_size: int):
    base = LstmConfig.from_dict(tuning.get('base_config', {}) or {})
    if grid_mode == 'optimized':
        return generate_optimized_grid(grid_size, params.grid.seed, base)
    return generate_swing_trade_grid(params.grid, base)


def print_report(results: dict, orchestrator: TuningOrchestrator) -> None:
    """Итоговый отчет по инструментам"""
    snapshots = orchestrator.progress_snapshot()

    print(f"\n{'='*70}")
    print(f"  📊 ИТОГИ ТЮНИНГА")
    print(f"{'='*70}\n")

    for symbol, config in results.items():
        snap = snapshots.get(symbol)
        counters = f"{snap.tested_configs}/{snap.total_configs}" if snap else "-"
        status = snap.status if snap else "skipped"
        if config is None:
            print(f"  ❌ {symbol:<10} status={status:<8} configs={counters}")
        else:
            print(f"  ✅ {symbol:<10} status={status:<8} configs={counters} | {config.short_repr()}")

    for symbol, config in results.items():
        metrics = orchestrator.best_metrics(symbol)
        if config is not None and metrics is not None:
            print_backtest_report(metrics, title=f"{symbol}: {config.short_repr()}")

    errors = orchestrator.exception_report.snapshot()
    if errors:
        print(f"\n⚠️ Ошибок конфигураций: {len(errors)}")
        for entry in errors[:10]:
            print(f"  • {entry.symbol}: {entry.message}")
    print(f"\n{'='*70}\n")


def main():
    """Главная функция"""
    args = parse_args()

    print(f"\n{'='*70}")
    print(f" "*15 + "🚀 LSTM HYPERPARAMETER TUNING 🚀")
    print(f"{'='*70}\n")

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path

    params = load_from_yaml(config_path)
    tuning = load_tuning_section(config_path)

    symbols = args.symbols or tuning.get('symbols', [])
    grid_mode = args.grid or tuning.get('grid_mode', 'defaults')
    grid_size = args.grid_size or int(tuning.get('optimized_size', 50))

    if not symbols:
        print("❌ Не заданы инструменты")
        return 1

    PATHS.create_directories()
    set_global_seeds(params.grid.seed)
    grid = build_grid(params, tuning, grid_mode, grid_size)

    print("📋 Параметры:")
    print(f"  • Symbols: {', '.join(symbols)}")
    print(f"  • Grid: {grid_mode} ({len(grid)} конфигураций)")
    print(f"  • Retrain per split: {'ВКЛ' if params.walk_forward.retrain_per_split else 'ВЫКЛ'}")
    print(f"  • Two-phase: {'ВКЛ' if params.two_phase.enabled else 'ВЫКЛ'}")

    models_dir = Path(params.persistence.models_dir) if params.persistence.models_dir else PATHS.MODELS_DIR
    predictor = TorchLstmPredictor()
    governor = ResourceGovernor(params.governor, params.gpu_batch)
    print(f"  • Device: {predictor.device}")
    print(f"  • Threads: {governor.effective_parallelism()}")

    orchestrator = TuningOrchestrator(
        predictor=predictor,
        hyperparam_store=FileHyperparameterStore(models_dir),
        model_store=FileModelStore(models_dir, predictor),
        governor=governor,
        params=params
    )
    scheduler = MultiSymbolScheduler(orchestrator, governor)

    provider = CsvSeriesProvider(args.data_dir) if args.data_dir else CsvSeriesProvider()
    LOGGER.info(f"Старт тюнинга: {symbols}")
    results = scheduler.tune_all(symbols, grid, provider)

    print_report(results, orchestrator)
    return 0 if any(c is not None for c in results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
