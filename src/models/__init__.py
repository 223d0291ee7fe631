from .lstm_config import LstmConfig, DEFAULT_FEATURES
from .scalers import ScalerSet
from .predictor import (
    Predictor,
    TorchLstmPredictor,
    TrainedModel,
    LstmRegressor,
    set_global_seeds
)

__all__ = [
    'LstmConfig',
    'DEFAULT_FEATURES',
    'ScalerSet',
    'Predictor',
    'TorchLstmPredictor',
    'TrainedModel',
    'LstmRegressor',
    'set_global_seeds'
]
