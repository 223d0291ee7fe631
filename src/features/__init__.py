from .engineering import (
    build_feature_frame,
    build_feature_matrix,
    get_feature_names,
    get_feature_normalization,
    validate_feature_names,
    atr
)

__all__ = [
    'build_feature_frame',
    'build_feature_matrix',
    'get_feature_names',
    'get_feature_normalization',
    'validate_feature_names',
    'atr'
]
