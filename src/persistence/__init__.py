from .stores import (
    HyperparameterStore,
    InMemoryHyperparameterStore,
    FileHyperparameterStore,
    ModelStore,
    InMemoryModelStore,
    FileModelStore
)

__all__ = [
    'HyperparameterStore',
    'InMemoryHyperparameterStore',
    'FileHyperparameterStore',
    'ModelStore',
    'InMemoryModelStore',
    'FileModelStore'
]
