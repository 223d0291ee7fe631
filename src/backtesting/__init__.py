from .tester import (
    simulate_round_trips,
    run_backtest,
    TradingMetrics,
    calculate_trading_metrics,
    aggregate_trading_metrics,
    print_backtest_report
)

__all__ = [
    'simulate_round_trips',
    'run_backtest',
    'TradingMetrics',
    'calculate_trading_metrics',
    'aggregate_trading_metrics',
    'print_backtest_report'
]
