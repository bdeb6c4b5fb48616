"""
annet package
~~~~~~~~~~~~~

Neural network construction and training engine. Contains the
backpropagation network, the self-organizing map with its multi-device
execution layer, binary persistence, the model registry and the
training API server.
"""

from .bpnet import BPNet
from .errors import (
    ANNetError,
    ConfigurationError,
    CorruptStorageError,
    DeviceError,
    DimensionMismatchError,
    MissingTrainingDataError,
    NumericInstabilityError,
    PersistenceError,
)
from .functions import NeighborhoodFunction, TransferFunction
from .network import AbstractNet
from .persistence import export_network, import_network
from .somnet import SOMNet
from .topology import Edge, Layer, LayerKind, Neuron
from .training_set import TrainingSet

__version__ = "1.0.0"

__all__ = [
    'AbstractNet',
    'BPNet',
    'SOMNet',
    'Layer',
    'LayerKind',
    'Neuron',
    'Edge',
    'TrainingSet',
    'TransferFunction',
    'NeighborhoodFunction',
    'export_network',
    'import_network',
    'ANNetError',
    'ConfigurationError',
    'MissingTrainingDataError',
    'DimensionMismatchError',
    'PersistenceError',
    'CorruptStorageError',
    'DeviceError',
    'NumericInstabilityError',
]
