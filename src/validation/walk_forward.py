"""
Walk-Forward оценка конфигурации.

Хвост серии (oos_fraction) делится на walk_forward_splits последовательных
сегментов. Для сегмента s:

    [0 .......... train_end) [embargo) [test_start ...... test_end)

Модель либо обучается один раз на префиксе до первого сегмента и
переиспользуется (по умолчанию), либо переобучается на префиксе каждого
сегмента. Сплит без сделок, с коротким префиксом или коротким тестовым
окном исключается из средних, а не заполняется нулями.

evaluate_holdout - отдельная проверка на скрытом хвосте серии для
двухфазного тюнинга.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from config.hyperparameters import HYPERPARAMS, WalkForwardSettings, TradingConfig, ScoringConfig
from src.backtesting.tester import TradingMetrics, run_backtest, aggregate_trading_metrics
from src.data.bars import BarSeries
from src.errors import InsufficientDataError, ScalerMismatchError
from src.models.lstm_config import LstmConfig
from src.models.predictor import Predictor, TrainedModel
from src.models.scalers import ScalerSet
from src.risk.atr_manager import ATRRiskManager
from src.tuning.scoring import score_metrics
from utils.logger import get_logger


logger = get_logger("walk_forward")


@dataclass(frozen=True)
class SplitWindow:
    """Геометрия одного сплита (индексы баров)"""
    index: int
    train_end: int
    test_start: int
    test_end: int

    @property
    def test_bars(self) -> int:
        return max(self.test_end - self.test_start, 0)


@dataclass
class SplitResult:
    window: SplitWindow
    mse: float
    metrics: TradingMetrics
    business_score: float


@dataclass
class WalkForwardResult:
    """Итог Walk-Forward: только валидные сплиты участвуют в средних"""
    mean_mse: float
    splits: List[SplitResult]
    invalid_splits: List[Tuple[int, str]] = field(default_factory=list)

    def aggregate(self, profit_factor_cap: float) -> TradingMetrics:
        return aggregate_trading_metrics([s.metrics for s in self.splits], profit_factor_cap)

    @property
    def business_scores(self) -> List[float]:
        return [s.business_score for s in self.splits]

    @property
    def business_score_std(self) -> float:
        scores = self.business_scores
        return float(np.std(scores)) if len(scores) > 1 else 0.0


@dataclass
class HoldoutResult:
    """Оценка на скрытом хвосте; модель обучена на всем до hold-out и принадлежит вызывающему"""
    holdout_start: int
    model: TrainedModel
    scalers: ScalerSet
    mse: float
    metrics: TradingMetrics
    business_score: float


class WalkForwardEvaluator:
    """Оценка обученного предиктора на последовательных out-of-sample окнах"""

    def __init__(self,
                 predictor: Predictor,
                 settings: Optional[WalkForwardSettings] = None,
                 trading: Optional[TradingConfig] = None,
                 scoring: Optional[ScoringConfig] = None):
        self.predictor = predictor
        self.settings = settings or HYPERPARAMS.walk_forward
        self.trading = trading or HYPERPARAMS.trading
        self.epsilon = (scoring or HYPERPARAMS.scoring).epsilon
        self.risk = ATRRiskManager.from_trading_config(self.trading)

    @property
    def retrain_per_split(self) -> bool:
        return self.settings.retrain_per_split

    def training_prefix_length(self, n_bars: int, config: LstmConfig) -> int:
        """Длина префикса для модели, переиспользуемой всеми сплитами"""
        config.require_series_length(n_bars)
        oos_start = int(n_bars * (1.0 - self.settings.oos_fraction))
        return max(oos_start, config.window_size + 1)

    def plan_splits(self, n_bars: int, config: LstmConfig) -> List[SplitWindow]:
        """Разбиение out-of-sample хвоста на сегменты с эмбарго"""
        oos_start = self.training_prefix_length(n_bars, config)
        if oos_start >= n_bars:
            raise InsufficientDataError(
                f"Нет out-of-sample баров: серия {n_bars}, префикс {oos_start}",
                series_length=n_bars,
                required=oos_start + 1
            )

        n_splits = config.walk_forward_splits
        size = (n_bars - oos_start) // n_splits
        windows = []
        for s in range(n_splits):
            seg_start = oos_start + s * size
            seg_end = n_bars if s == n_splits - 1 else seg_start + size
            windows.append(SplitWindow(
                index=s,
                train_end=seg_start,
                test_start=min(seg_start + config.embargo_bars, seg_end),
                test_end=seg_end
            ))
        return windows

    def _invalid_reason(self, window: SplitWindow, config: LstmConfig) -> Optional[str]:
        if window.train_end < config.window_size + 1:
            return f"префикс {window.train_end} < window_size + 1"
        if window.test_bars < max(self.settings.min_test_bars, 2):
            return f"тестовое окно {window.test_bars} баров"
        return None

    @staticmethod
    def _split_mse(close: np.ndarray, predicted: np.ndarray, start: int, horizon: int) -> float:
        targets_idx = np.arange(start, start + len(predicted)) + horizon
        mask = targets_idx < len(close)
        if not mask.any():
            return math.nan
        errors = predicted[mask] - close[targets_idx[mask]]
        return float(np.mean(errors ** 2))

    def _backtest_window(self, series: BarSeries, config: LstmConfig,
                         model: TrainedModel, scalers: ScalerSet,
                         start: int, end: int,
                         atr_values: np.ndarray, stop_distance: np.ndarray) -> Tuple[np.ndarray, TradingMetrics]:
        """Прогнозы и торговая симуляция на [start, end)"""
        predicted = self.predictor.predict_range(series, config, model, scalers, start, end)
        threshold = self.risk.swing_threshold(
            series.head(start), config.threshold_type,
            config.threshold_k, atr_values=atr_values
        )
        metrics, _ = run_backtest(
            series.close, predicted, stop_distance, threshold, config.horizon_bars,
            start, end, self.trading.capital, self.trading.risk_pct,
            self.trading.fee_pct + self.trading.slippage_pct
        )
        return predicted, metrics

    def evaluate_holdout(self, series: BarSeries, config: LstmConfig,
                         holdout_start: int) -> HoldoutResult:
        """
        Обучение на [0, holdout_start) и одна торговая симуляция на хвосте.

        Raises:
            InsufficientDataError: Слишком короткий префикс или хвост
        """
        n = len(series)
        if holdout_start < config.window_size + 1 or n - holdout_start < max(self.settings.min_test_bars, 2):
            raise InsufficientDataError(
                f"{series.symbol}: hold-out с бара {holdout_start} недоступен для серии из {n} баров",
                series_length=n,
                required=config.window_size + 1 + max(self.settings.min_test_bars, 2)
            )

        model, scalers = self.predictor.train(series.head(holdout_start), config)
        try:
            atr_values = self.risk.atr_series(series)
            stop_distance = self.risk.stop_distances(series.close, atr_values)
            predicted, metrics = self._backtest_window(
                series, config, model, scalers, holdout_start, n, atr_values, stop_distance
            )
        except Exception:
            self.predictor.release(model)
            raise

        score = score_metrics(metrics, config.profit_factor_cap, config.drawdown_gamma, self.epsilon)
        logger.debug(f"{series.symbol}: hold-out [{holdout_start}, {n}) score={score:.6f} "
                     f"trades={metrics.num_trades:.0f}")
        return HoldoutResult(
            holdout_start=holdout_start,
            model=model,
            scalers=scalers,
            mse=self._split_mse(series.close, predicted, holdout_start, config.horizon_bars),
            metrics=metrics,
            business_score=score
        )

    def evaluate(self,
                 series: BarSeries,
                 config: LstmConfig,
                 model: Optional[TrainedModel] = None,
                 scalers: Optional[ScalerSet] = None) -> WalkForwardResult:
        """
        Walk-Forward оценка.

        Args:
            series: Полная серия баров
            config: Конфигурация
            model, scalers: Модель на префиксе training_prefix_length
                (обязательны, если retrain_per_split=False)

        Raises:
            InsufficientDataError: Ни одного валидного сплита
        """
        windows = self.plan_splits(len(series), config)
        if not self.retrain_per_split and (model is None or scalers is None):
            raise ValueError("Для режима без переобучения нужны model и scalers")

        close = series.close
        atr_values = self.risk.atr_series(series)
        stop_distance = self.risk.stop_distances(close, atr_values)

        results: List[SplitResult] = []
        invalid: List[Tuple[int, str]] = []

        for window in windows:
            reason = self._invalid_reason(window, config)
            if reason is not None:
                invalid.append((window.index, reason))
                continue

            split_model, split_scalers = model, scalers
            owned_model = None
            try:
                if self.retrain_per_split:
                    split_model, split_scalers = self.predictor.train(
                        series.head(window.train_end), config
                    )
                    owned_model = split_model

                predicted, metrics = self._backtest_window(
                    series, config, split_model, split_scalers,
                    window.test_start, window.test_end, atr_values, stop_distance
                )
            except ScalerMismatchError:
                raise
            except Exception as e:
                logger.warning(f"{series.symbol}: сплит {window.index} исключен из-за ошибки: {e}")
                invalid.append((window.index, f"ошибка: {e}"))
                continue
            finally:
                if owned_model is not None:
                    self.predictor.release(owned_model)

            if metrics.num_trades == 0:
                invalid.append((window.index, "нет сделок"))
                continue

            results.append(SplitResult(
                window=window,
                mse=self._split_mse(close, predicted, window.test_start, config.horizon_bars),
                metrics=metrics,
                business_score=score_metrics(metrics, config.profit_factor_cap,
                                             config.drawdown_gamma, self.epsilon)
            ))

        if not results:
            raise InsufficientDataError(
                f"{series.symbol}: нет валидных сплитов ({config.short_repr()}): {invalid}",
                series_length=len(series)
            )

        mses = [r.mse for r in results if math.isfinite(r.mse)]
        mean_mse = float(np.mean(mses)) if mses else math.nan

        logger.debug(f"{series.symbol}: валидных сплитов {len(results)}/{len(windows)}, "
                     f"MSE={mean_mse:.6f}")
        return WalkForwardResult(mean_mse=mean_mse, splits=results, invalid_splits=invalid)
