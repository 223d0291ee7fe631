"""
Оркестратор тюнинга одного инструмента.

Поток:
    1. Есть сохраненная модель или гиперпараметры -> сразу вернуть конфигурацию
    2. Пул потоков: одна задача на конфигурацию, перед каждой отправкой
       ожидание памяти у губернатора
    3. Задача: обучение на префиксе -> Walk-Forward -> агрегация ->
       бизнес-скор -> аудит метрик -> TuningResult
    4. Выбор в порядке отправки: скор, затем MSE, затем позиция в сетке
    5. Сохранение гиперпараметров и модели независимо друг от друга

Двухфазный режим (tune_instrument_two_phase):
    хвост серии скрывается как hold-out -> фаза 1 на грубой сетке ->
    микро-сетка вокруг top_n -> фаза 2 -> победитель фазы 2 принимается
    только при достаточном приросте скора и не хуже фазы 1 на hold-out.
"""

import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from config.hyperparameters import HYPERPARAMS, HyperParameters
from src.backtesting.tester import TradingMetrics
from src.data.bars import BarSeries
from src.errors import (
    AllConfigurationsFailed, ConfigurationError, PersistenceFailure,
    TrainingFailure, TuningError
)
from src.models.lstm_config import LstmConfig
from src.models.predictor import Predictor, TrainedModel
from src.models.scalers import ScalerSet
from src.monitoring.progress import (
    ExceptionReport, ProgressRegistry, TuningProgress,
    STATUS_DONE, STATUS_FAILED, append_progress_metrics, build_progress_metrics
)
from src.persistence.stores import HyperparameterStore, ModelStore
from src.tuning.governor import ResourceGovernor
from src.tuning.grid import generate_micro_grid
from src.tuning.scoring import is_better, is_eligible, ranking_key, score_metrics
from src.validation.walk_forward import HoldoutResult, WalkForwardEvaluator
from utils.logger import PROJECT_LOGGER, get_logger


logger = get_logger("orchestrator")

# Знаменатель относительного прироста скора во второй фазе
RELATIVE_GAIN_EPS = 1e-6


@dataclass
class TuningResult:
    """Результат оценки одной конфигурации (живет до выбора лучшей)"""
    grid_index: int
    config: LstmConfig
    model: TrainedModel
    scalers: ScalerSet
    mean_mse: float
    metrics: TradingMetrics
    business_score: float
    business_score_std: float = 0.0
    valid_splits: int = 0

    @property
    def rank(self) -> Tuple[float, float, int]:
        return ranking_key(self.business_score, self.mean_mse, self.grid_index)


class TuningOrchestrator:
    """Перебор сетки конфигураций для инструмента и выбор лучшей"""

    def __init__(self,
                 predictor: Predictor,
                 hyperparam_store: HyperparameterStore,
                 model_store: ModelStore,
                 evaluator: Optional[WalkForwardEvaluator] = None,
                 governor: Optional[ResourceGovernor] = None,
                 params: Optional[HyperParameters] = None,
                 registry: Optional[ProgressRegistry] = None,
                 exception_report: Optional[ExceptionReport] = None,
                 progress_metrics_path=None):
        self.params = params or HYPERPARAMS
        self.predictor = predictor
        self.hyperparam_store = hyperparam_store
        self.model_store = model_store
        self.evaluator = evaluator or WalkForwardEvaluator(
            predictor, self.params.walk_forward, self.params.trading, self.params.scoring
        )
        self.governor = governor or ResourceGovernor(self.params.governor, self.params.gpu_batch)
        self.registry = registry or ProgressRegistry()
        self.exception_report = exception_report or ExceptionReport()

        if progress_metrics_path is None and self.params.persistence.write_progress_metrics:
            from config.paths import PATHS
            progress_metrics_path = PATHS.get_progress_metrics_path()
        self.progress_metrics_path = progress_metrics_path

        self._results_lock = threading.Lock()
        self._best_metrics: Dict[str, TradingMetrics] = {}

    # ------------------------------------------------------------------
    # Быстрые пути
    # ------------------------------------------------------------------

    def _already_tuned(self, symbol: str) -> Optional[LstmConfig]:
        try:
            if self.model_store.exists(symbol):
                config = self.hyperparam_store.load(symbol) or self.model_store.load_config(symbol)
                if config is not None:
                    logger.info(f"{symbol}: модель уже существует, тюнинг пропущен")
                    return config
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"{symbol}: не удалось проверить сохраненную модель: {e}")

        try:
            config = self.hyperparam_store.load(symbol)
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"{symbol}: не удалось прочитать гиперпараметры: {e}")
            return None
        if config is not None:
            logger.info(f"{symbol}: гиперпараметры уже существуют, тюнинг пропущен")
        return config

    def _prepare_grid(self, symbol: str, grid: Sequence[LstmConfig]) -> List[LstmConfig]:
        grid = list(grid)
        if not grid:
            raise ConfigurationError(f"{symbol}: пустая сетка конфигураций")
        return [self.governor.scale_batch_for_gpu(c) for c in grid]

    # ------------------------------------------------------------------
    # Задача одной конфигурации
    # ------------------------------------------------------------------

    def _evaluate_configuration(self, symbol: str, grid_index: int, config: LstmConfig,
                                series: BarSeries, progress: TuningProgress,
                                phase: int = 1) -> Optional[TuningResult]:
        started = time.perf_counter()
        model: Optional[TrainedModel] = None
        result: Optional[TuningResult] = None
        try:
            prefix = self.evaluator.training_prefix_length(len(series), config)

            with self.governor.gpu_slot():
                try:
                    model, scalers = self.predictor.train(series.head(prefix), config)
                except TuningError:
                    raise
                except (RuntimeError, ValueError, ArithmeticError) as e:
                    raise TrainingFailure(f"Ошибка обучения ({config.short_repr()}): {e}") from e

            wf = self.evaluator.evaluate(series, config, model, scalers)
            aggregated = wf.aggregate(config.profit_factor_cap)
            score = score_metrics(aggregated, config.profit_factor_cap, config.drawdown_gamma,
                                  self.params.scoring.epsilon)

            audit = dict(aggregated.to_dict(),
                         business_score=score if math.isfinite(score) else None,
                         business_score_std=wf.business_score_std,
                         mean_mse=wf.mean_mse if math.isfinite(wf.mean_mse) else None,
                         valid_splits=len(wf.splits),
                         invalid_splits=len(wf.invalid_splits),
                         grid_index=grid_index,
                         phase=phase)
            try:
                self.hyperparam_store.save_metrics(symbol, config, audit)
            except PersistenceFailure as e:
                logger.warning(f"{symbol}: аудит метрик не записан: {e}")

            result = TuningResult(
                grid_index=grid_index,
                config=config,
                model=model,
                scalers=scalers,
                mean_mse=wf.mean_mse,
                metrics=aggregated,
                business_score=score,
                business_score_std=wf.business_score_std,
                valid_splits=len(wf.splits)
            )
            logger.info(f"{symbol} [{grid_index + 1}/{progress.total_configs}] "
                        f"score={score:.6f} mse={wf.mean_mse:.6f} ({config.short_repr()})")
            return result

        except Exception as e:
            logger.error(f"{symbol}: конфигурация #{grid_index} упала: {e}", exc_info=True)
            self.exception_report.record(symbol, config, e)
            return None

        finally:
            progress.mark_tested(int((time.perf_counter() - started) * 1000), failed=result is None)
            if result is None and model is not None:
                self.predictor.release(model)

    # ------------------------------------------------------------------
    # Пул конфигураций
    # ------------------------------------------------------------------

    def _run_grid(self, symbol: str, grid: List[LstmConfig], series: BarSeries,
                  progress: TuningProgress, index_offset: int = 0,
                  phase: int = 1) -> Tuple[Optional[TuningResult], List[TuningResult]]:
        """
        Оценка сетки на пуле потоков.

        Returns:
            (лучший результат с живой моделью, все пригодные результаты по убыванию ранга)
        """
        n_threads = self.governor.pool_size(len(grid))
        # Отправка блокируется, пока все рабочие заняты
        slots = threading.BoundedSemaphore(n_threads)
        futures: List[Tuple[int, LstmConfig, Future]] = []

        with ThreadPoolExecutor(max_workers=n_threads,
                                thread_name_prefix=f"tune-{symbol}") as executor:
            for offset, config in enumerate(grid):
                index = index_offset + offset
                self.governor.wait_until_memory_available()
                slots.acquire()
                future = executor.submit(self._evaluate_configuration,
                                         symbol, index, config, series, progress, phase)
                future.add_done_callback(lambda _f: slots.release())
                futures.append((index, config, future))

            return self._select_best(symbol, futures)

    def _select_best(self, symbol: str, futures: List[Tuple[int, LstmConfig, Future]]
                     ) -> Tuple[Optional[TuningResult], List[TuningResult]]:
        """Сбор результатов в порядке отправки; проигравшие модели освобождаются"""
        best: Optional[TuningResult] = None
        eligible: List[TuningResult] = []
        for index, config, future in futures:
            try:
                result = future.result()
            except Exception as e:
                logger.error(f"{symbol}: ошибка сбора результата #{index}: {e}", exc_info=True)
                self.exception_report.record(symbol, config, e)
                continue

            if result is None:
                continue
            if not is_eligible(result.business_score):
                logger.warning(f"{symbol}: конфигурация #{index} со скором "
                               f"{result.business_score} не участвует в выборе")
                self.predictor.release(result.model)
                continue

            eligible.append(result)
            if is_better(result.rank, best.rank if best else None):
                if best is not None:
                    self.predictor.release(best.model)
                best = result
            else:
                self.predictor.release(result.model)

        eligible.sort(key=lambda r: r.rank, reverse=True)
        return best, eligible

    # ------------------------------------------------------------------
    # Основной сценарий
    # ------------------------------------------------------------------

    def tune_instrument(self, symbol: str, grid: Sequence[LstmConfig],
                        series: BarSeries) -> Optional[LstmConfig]:
        """
        Тюнинг инструмента по сетке.

        Args:
            symbol: Инструмент
            grid: Конфигурации (порядок задает приоритет при равенстве)
            series: Полная серия баров

        Returns:
            Лучшая конфигурация или None, если ни одна не пригодна

        Raises:
            ConfigurationError: Пустая сетка
        """
        existing = self._already_tuned(symbol)
        if existing is not None:
            return existing

        grid = self._prepare_grid(symbol, grid)
        progress = self.registry.start(symbol, len(grid), self.governor.pool_size(len(grid)))
        logger.info(f"{symbol}: тюнинг {len(grid)} конфигураций на {progress.threads_used} потоках "
                    f"({len(series)} баров)")

        best, _ = self._run_grid(symbol, grid, series, progress)
        if best is None:
            return self._finish_failed(symbol, progress)
        return self._finish_success(symbol, series, progress, best)

    # ------------------------------------------------------------------
    # Двухфазный сценарий
    # ------------------------------------------------------------------

    def holdout_start(self, n_bars: int, max_window: int) -> Optional[int]:
        """Начало hold-out хвоста или None, если данных для него мало"""
        tp = self.params.two_phase
        requested = max(int(n_bars * tp.holdout_fraction), tp.min_holdout_bars)
        requested = min(requested, n_bars // 3)
        start = n_bars - requested
        if requested < 1 or start <= max_window + tp.holdout_margin_bars:
            return None
        return start

    def tune_instrument_two_phase(self, symbol: str, grid: Sequence[LstmConfig],
                                  series: BarSeries) -> Optional[LstmConfig]:
        """
        Двухфазный тюнинг с проверкой на hold-out.

        Обе фазы видят только серию до hold-out. Победитель фазы 2 заменяет
        победителя фазы 1, если прирост скора не меньше min_relative_gain и
        min_absolute_gain и превышает разброс скоров фазы 1 по сплитам.
        Затем оба кандидата переобучаются на всем до hold-out и сравниваются
        на нем; при ничьей остается фаза 2.

        Raises:
            ConfigurationError: Пустая сетка
        """
        existing = self._already_tuned(symbol)
        if existing is not None:
            return existing

        grid = self._prepare_grid(symbol, grid)
        tp = self.params.two_phase
        holdout_start = self.holdout_start(len(series), max(c.window_size for c in grid))
        if holdout_start is None:
            logger.warning(f"{symbol}: данных недостаточно для hold-out, фазы идут на всей серии")
            phase_series = series
        else:
            phase_series = series.head(holdout_start)
            logger.info(f"{symbol}: hold-out [{holdout_start}, {len(series)}) скрыт от фаз 1 и 2")

        progress = self.registry.start(symbol, len(grid), self.governor.pool_size(len(grid)))
        logger.info(f"{symbol}: фаза 1, {len(grid)} конфигураций")
        best1, ranked1 = self._run_grid(symbol, grid, phase_series, progress, phase=1)
        if best1 is None:
            return self._finish_failed(symbol, progress)

        micro = generate_micro_grid([r.config for r in ranked1[:tp.top_n]], exclude=grid)
        best2 = None
        if micro:
            progress.add_configs(len(micro))
            logger.info(f"{symbol}: фаза 2, микро-сетка из {len(micro)} конфигураций")
            best2, _ = self._run_grid(symbol, micro, phase_series, progress,
                                      index_offset=len(grid), phase=2)
        else:
            logger.warning(f"{symbol}: микро-сетка пуста, остается результат фазы 1")

        provisional = best1
        if best2 is not None:
            if self._phase_two_accepted(symbol, best1, best2):
                provisional = best2
            else:
                self.predictor.release(best2.model)

        chosen = provisional
        if holdout_start is not None:
            chosen = self._validate_on_holdout(symbol, series, holdout_start, best1, provisional)
        elif provisional is not best1:
            self.predictor.release(best1.model)
        return self._finish_success(symbol, series, progress, chosen)

    def _phase_two_accepted(self, symbol: str, baseline: TuningResult,
                            improved: TuningResult) -> bool:
        tp = self.params.two_phase
        absolute_gain = improved.business_score - baseline.business_score
        relative_gain = absolute_gain / max(RELATIVE_GAIN_EPS, abs(baseline.business_score))
        above_noise = improved.business_score > baseline.business_score + baseline.business_score_std
        accepted = (relative_gain >= tp.min_relative_gain
                    and absolute_gain >= tp.min_absolute_gain
                    and above_noise)
        logger.info(f"{symbol}: фаза 1 score={baseline.business_score:.6f} "
                    f"(std={baseline.business_score_std:.6f}), фаза 2 score={improved.business_score:.6f}, "
                    f"прирост {absolute_gain:.6f} ({relative_gain:.2%}) -> "
                    f"{'принята' if accepted else 'отклонена'}")
        return accepted

    def _holdout(self, symbol: str, series: BarSeries, config: LstmConfig,
                 holdout_start: int) -> Optional[HoldoutResult]:
        try:
            with self.governor.gpu_slot():
                result = self.evaluator.evaluate_holdout(series, config, holdout_start)
        except Exception as e:
            logger.warning(f"{symbol}: hold-out оценка не удалась ({config.short_repr()}): {e}")
            self.exception_report.record(symbol, config, e)
            return None

        audit = dict(result.metrics.to_dict(),
                     business_score=result.business_score if math.isfinite(result.business_score) else None,
                     mean_mse=result.mse if math.isfinite(result.mse) else None,
                     holdout_start=holdout_start,
                     phase='holdout')
        try:
            self.hyperparam_store.save_metrics(symbol, config, audit)
        except PersistenceFailure as e:
            logger.warning(f"{symbol}: аудит hold-out не записан: {e}")
        return result

    def _validate_on_holdout(self, symbol: str, series: BarSeries, holdout_start: int,
                             baseline: TuningResult, provisional: TuningResult) -> TuningResult:
        """Выбор между фазами на hold-out; сохраняется модель, обученная до hold-out"""
        from_phase_two = provisional is not baseline
        ho_base = self._holdout(symbol, series, baseline.config, holdout_start)
        ho_prov = ho_base
        if from_phase_two:
            ho_prov = self._holdout(symbol, series, provisional.config, holdout_start)

        if ho_base is None or ho_prov is None or not (
                is_eligible(ho_base.business_score) and is_eligible(ho_prov.business_score)):
            if ho_base is not None:
                self.predictor.release(ho_base.model)
            if ho_prov is not None and ho_prov is not ho_base:
                self.predictor.release(ho_prov.model)
            logger.warning(f"{symbol}: hold-out не оценен, остается предварительный выбор")
            if from_phase_two:
                self.predictor.release(baseline.model)
            return provisional

        keep_phase_two = from_phase_two and ho_prov.business_score >= ho_base.business_score
        chosen, chosen_ho = (provisional, ho_prov) if keep_phase_two else (baseline, ho_base)
        if from_phase_two:
            self.predictor.release((ho_base if keep_phase_two else ho_prov).model)
            self.predictor.release(provisional.model)
        self.predictor.release(baseline.model)

        logger.info(f"{symbol}: hold-out score={chosen_ho.business_score:.6f} "
                    f"-> конфигурация #{chosen.grid_index}")
        return TuningResult(
            grid_index=chosen.grid_index,
            config=chosen.config,
            model=chosen_ho.model,
            scalers=chosen_ho.scalers,
            mean_mse=chosen_ho.mse,
            metrics=chosen_ho.metrics,
            business_score=chosen_ho.business_score,
            valid_splits=1
        )

    # ------------------------------------------------------------------
    # Завершение
    # ------------------------------------------------------------------

    def _finish_failed(self, symbol: str, progress: TuningProgress) -> Optional[LstmConfig]:
        progress.finish(STATUS_FAILED)
        failure = AllConfigurationsFailed(symbol, progress.total_configs)
        logger.error(f"{symbol}: {failure}")
        self._write_progress_metrics(progress)
        snap = progress.snapshot()
        PROJECT_LOGGER.log_tuning_summary(symbol, STATUS_FAILED, {
            'tested': snap.tested_configs, 'failed': snap.failed_configs
        })
        return None

    def _finish_success(self, symbol: str, series: BarSeries, progress: TuningProgress,
                        best: TuningResult) -> LstmConfig:
        best = self._retrain_on_full_series(symbol, series, best)
        self._persist_best(symbol, best)
        progress.finish(STATUS_DONE)
        self._write_progress_metrics(progress)
        with self._results_lock:
            self._best_metrics[symbol] = best.metrics

        logger.info(f"{symbol}: лучшая конфигурация #{best.grid_index} "
                    f"score={best.business_score:.6f} pf={best.metrics.profit_factor:.2f} "
                    f"wr={best.metrics.win_rate:.2f} dd={best.metrics.max_drawdown_pct:.2%}")
        snap = progress.snapshot()
        PROJECT_LOGGER.log_tuning_summary(symbol, STATUS_DONE, {
            'tested': snap.tested_configs, 'failed': snap.failed_configs,
            'grid_index': best.grid_index, 'business_score': round(best.business_score, 6)
        })
        self.predictor.release(best.model)
        return best.config

    def _retrain_on_full_series(self, symbol: str, series: BarSeries,
                                best: TuningResult) -> TuningResult:
        """Модель для сохранения обучается на всей серии (если включено)"""
        if not self.params.walk_forward.retrain_full_for_persistence:
            return best
        try:
            with self.governor.gpu_slot():
                model, scalers = self.predictor.train(series, best.config)
        except Exception as e:
            logger.warning(f"{symbol}: дообучение на всей серии не удалось, "
                           f"сохраняется модель оценки: {e}")
            return best
        self.predictor.release(best.model)
        return replace(best, model=model, scalers=scalers)

    def _persist_best(self, symbol: str, best: TuningResult) -> None:
        """Гиперпараметры и модель сохраняются независимо"""
        try:
            self.hyperparam_store.save(symbol, best.config)
        except Exception as e:
            failure = e if isinstance(e, PersistenceFailure) else PersistenceFailure(str(e))
            logger.error(f"{symbol}: гиперпараметры не сохранены: {failure}", exc_info=True)

        try:
            self.model_store.save(symbol, best.model, best.config, best.scalers)
        except Exception as e:
            failure = e if isinstance(e, PersistenceFailure) else PersistenceFailure(str(e))
            logger.error(f"{symbol}: модель не сохранена: {failure}", exc_info=True)

    def _write_progress_metrics(self, progress: TuningProgress) -> None:
        if self.progress_metrics_path is None:
            return
        try:
            append_progress_metrics(self.progress_metrics_path, build_progress_metrics(progress.snapshot()))
        except OSError as e:
            logger.warning(f"{progress.symbol}: журнал прогресса не записан: {e}")

    def progress_snapshot(self) -> Dict:
        return self.registry.snapshot()

    def best_metrics(self, symbol: str) -> Optional[TradingMetrics]:
        """Агрегированные метрики последней выбранной конфигурации инструмента"""
        with self._results_lock:
            return self._best_metrics.get(symbol)
