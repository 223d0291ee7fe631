"""
LstmTuner - подбор гиперпараметров LSTM с Walk-Forward оценкой

Для исторической серии баров инструмента перебирает сетку конфигураций
LSTM, обучает предиктор для каждой, оценивает его последовательной
торговой симуляцией и выбирает конфигурацию с лучшим бизнес-скором.

Architecture:
    - Predictor: обучение LSTM (PyTorch) и прогноз цены на горизонте
    - Walk-Forward Evaluator: сплиты с эмбарго, симуляция сделок (Numba)
    - Business Scorer: expectancy * PF * win rate со штрафом за просадку
    - Orchestrator / Scheduler: пул потоков, контроль памяти, хранилища

Key Features:
    - Декартова, случайная и оптимизированная (40/40/20) сетки
    - Ограничение потоков по ядрам, GPU и памяти
    - Файловые хранилища гиперпараметров, аудита и моделей
    - Журнал ошибок и heartbeat прогресса
"""

__version__ = "1.0.0"
__author__ = "Trading Systems Engineering Team"
__license__ = "Proprietary"

# Package metadata
PROJECT_NAME = "LstmTuner"

# Импорты подмодулей
from . import data
from . import features
from . import models
from . import backtesting

__all__ = [
    'data',
    'features',
    'models',
    'backtesting'
]
