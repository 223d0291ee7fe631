"""
Быстрый бэктестер прогнозов LSTM

Реализован на Numba JIT для максимальной производительности.
Симулирует последовательную торговлю по прогнозам:
    - Вход, когда |прогноз - close| / close превышает порог волатильности
    - Направление по знаку прогнозируемого движения (long/short)
    - Выход на границе горизонта или по обратному сигналу
    - Размер позиции от риска на сделку и ATR-стопа
    - Комиссия и проскальзывание на каждую сторону сделки
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, List, Tuple

import numpy as np
from numba import jit


@jit(nopython=True)
def simulate_round_trips(
    close: np.ndarray,
    predicted: np.ndarray,
    stop_distance: np.ndarray,
    threshold: float,
    horizon: int,
    start: int,
    end: int,
    capital: float,
    risk_pct: float,
    cost_pct: float
) -> tuple:
    """
    Симуляция сделок на тестовом окне [start, end) (Numba-оптимизирован)

    Логика:
        1. На баре t сигнал = (predicted[t] - close[t]) / close[t]
        2. |сигнал| > threshold -> открытие по close[t] в сторону сигнала
        3. Закрытие на баре t + horizon (не дальше end - 1)
           или раньше, если прогноз развернулся за порог
        4. Следующая сделка рассматривается с бара закрытия

    Args:
        close: Цены закрытия всей серии
        predicted: Прогнозы для баров start..end-1 (длина end - start)
        stop_distance: Дистанция стопа для каждого бара серии
        threshold: Относительный порог входа
        horizon: Горизонт удержания в барах
        start: Первый бар тестового окна
        end: Граница тестового окна (исключительно)
        capital: Капитал для расчета размера позиции
        risk_pct: Доля капитала под риск на сделку
        cost_pct: Комиссия + проскальзывание на одну сторону

    Returns:
        (profits, bars_held): Прибыль и длительность каждой сделки
    """
    max_trades = max(end - start, 1)
    profits = np.zeros(max_trades)
    bars_held = np.zeros(max_trades, dtype=np.int64)
    n_trades = 0

    t = start
    while t < end - 1:
        entry = close[t]
        pred = predicted[t - start]
        if not np.isfinite(pred) or entry <= 0:
            t += 1
            continue

        signal = (pred - entry) / entry
        if abs(signal) <= threshold:
            t += 1
            continue

        direction = 1.0 if signal > 0 else -1.0
        size = capital * risk_pct / stop_distance[t] if stop_distance[t] > 0 else 0.0

        exit_bar = min(t + horizon, end - 1)
        j = t + 1
        while j < exit_bar:
            # === ЗАКРЫТИЕ ПО ОБРАТНОМУ СИГНАЛУ ===
            p = predicted[j - start]
            if np.isfinite(p) and close[j] > 0:
                s = (p - close[j]) / close[j]
                if s * direction < -threshold:
                    break
            j += 1

        exit_price = close[j]
        profit = direction * (exit_price - entry) * size
        profit -= cost_pct * size * (entry + exit_price)

        profits[n_trades] = profit
        bars_held[n_trades] = j - t
        n_trades += 1
        t = j

    return profits[:n_trades], bars_held[:n_trades]


@dataclass(frozen=True)
class TradingMetrics:
    """Торговые метрики одного сплита (или средние по сплитам)"""
    num_trades: float = 0.0
    total_profit: float = 0.0
    profit_factor: float = 0.0
    win_rate: float = 0.0
    expectancy: float = 0.0
    max_drawdown_pct: float = 0.0
    sortino: float = 0.0
    calmar: float = 0.0
    turnover: float = 0.0
    avg_bars_in_position: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        data = asdict(self)
        # JSON не знает inf
        if math.isinf(data['profit_factor']):
            data['profit_factor'] = None
        return data


def calculate_trading_metrics(profits: np.ndarray,
                              bars_held: np.ndarray,
                              capital: float,
                              n_bars: int) -> TradingMetrics:
    """
    Расчет торговых метрик по списку сделок

    Args:
        profits: Прибыль каждой сделки (в валюте счета)
        bars_held: Длительность каждой сделки в барах
        capital: Начальный капитал (база equity и доходностей)
        n_bars: Длина тестового окна

    Returns:
        TradingMetrics: profit_factor = +inf, если убыточных сделок нет
    """
    profits = np.asarray(profits, dtype=np.float64)
    n = len(profits)
    if n == 0:
        return TradingMetrics()

    total_profit = float(profits.sum())

    # Maximum Drawdown по кривой капитала
    equity = np.concatenate((np.array([capital]), capital + np.cumsum(profits)))
    peak = np.maximum.accumulate(equity)
    drawdown = np.where(peak > 0, (peak - equity) / peak, 0.0)
    max_dd = float(max(drawdown.max(), 0.0))

    winning = profits[profits > 0]
    losing = profits[profits < 0]
    gross_profit = float(winning.sum())
    gross_loss = float(-losing.sum())

    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = math.inf if gross_profit > 0 else 0.0

    win_rate = len(winning) / n
    # Средний результат сделки; нулевые сделки входят в знаменатель
    expectancy = float(profits.mean())

    # Sortino по доходностям сделок относительно капитала
    returns = profits / capital
    downside = returns[returns < 0]
    downside_std = float(np.sqrt(np.mean(downside ** 2))) if len(downside) else 0.0
    sortino = float(returns.mean()) / downside_std if downside_std > 0 else 0.0

    calmar = (total_profit / capital) / max_dd if max_dd > 0 else 0.0

    return TradingMetrics(
        num_trades=float(n),
        total_profit=total_profit,
        profit_factor=profit_factor,
        win_rate=win_rate,
        expectancy=expectancy,
        max_drawdown_pct=max_dd,
        sortino=sortino,
        calmar=calmar,
        turnover=n / max(n_bars, 1),
        avg_bars_in_position=float(np.mean(bars_held)) if len(bars_held) else 0.0
    )


def aggregate_trading_metrics(metrics: List[TradingMetrics],
                              profit_factor_cap: float) -> TradingMetrics:
    """
    Среднее арифметическое по сплитам.
    profit_factor ограничивается cap до усреднения (inf/NaN -> cap).
    """
    if not metrics:
        raise ValueError("Нет метрик для агрегации")

    def clamp(pf: float) -> float:
        if math.isnan(pf) or math.isinf(pf):
            return profit_factor_cap
        return min(pf, profit_factor_cap)

    values = {name: [] for name in TradingMetrics.__dataclass_fields__}
    for m in metrics:
        for name in values:
            value = getattr(m, name)
            values[name].append(clamp(value) if name == 'profit_factor' else value)

    return TradingMetrics(**{name: float(np.mean(v)) for name, v in values.items()})


def run_backtest(close: np.ndarray,
                 predicted: np.ndarray,
                 stop_distance: np.ndarray,
                 threshold: float,
                 horizon: int,
                 start: int,
                 end: int,
                 capital: float,
                 risk_pct: float,
                 cost_pct: float) -> Tuple[TradingMetrics, np.ndarray]:
    """Симуляция + метрики; возвращает также прибыль по сделкам"""
    profits, bars_held = simulate_round_trips(
        np.ascontiguousarray(close, dtype=np.float64),
        np.ascontiguousarray(predicted, dtype=np.float64),
        np.ascontiguousarray(stop_distance, dtype=np.float64),
        float(threshold), int(horizon), int(start), int(end),
        float(capital), float(risk_pct), float(cost_pct)
    )
    return calculate_trading_metrics(profits, bars_held, capital, end - start), profits


def print_backtest_report(metrics: TradingMetrics, title: str = "BACKTEST REPORT") -> None:
    """
    Вывод детального отчета по бэктесту
    """
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}")
    print(f"\nОсновные метрики:")
    print(f"  • Total Trades:     {metrics.num_trades:>8.1f}")
    print(f"  • Win Rate:         {metrics.win_rate:>7.1%}")
    print(f"  • Profit Factor:    {metrics.profit_factor:>8.2f}")
    print(f"  • Expectancy:       {metrics.expectancy:>8.2f}")

    print(f"\nРиски:")
    print(f"  • Max Drawdown:     {metrics.max_drawdown_pct:>7.1%}")
    print(f"  • Sortino Ratio:    {metrics.sortino:>8.2f}")
    print(f"  • Calmar Ratio:     {metrics.calmar:>8.2f}")

    print(f"\nСделки:")
    print(f"  • Total Profit:     {metrics.total_profit:>8.2f}")
    print(f"  • Turnover:         {metrics.turnover:>8.3f}")
    print(f"  • Avg Bars Held:    {metrics.avg_bars_in_position:>8.2f}")
    print(f"{'='*60}\n")
