"""
persistence.py
~~~~~~~~~~~~~~

Binary storage of trained networks.

A stored network is a numpy ``.npz`` archive with these members, written
in this order:

- ``format`` ('ANNET') and ``version``
- ``net_type`` ('bp' or 'som')
- ``hyperparameters``: learning rate, momentum, weight decay, conscience rate
- ``transfer_function`` and ``neighborhood_function`` names
- ``layer_kinds`` and ``layer_sizes``, one entry per layer
- ``edges_<i>``: weight matrix between layer i and i+1, indexed
  ``[source id, target id]``, and ``edge_updates_<i>`` (momentum state)
- ``biases_<i>`` for every layer
- ``positions`` and ``conscience`` of the map layer (SOM only)
- ``ts_inputs`` / ``ts_outputs``: optional embedded training set, one row
  per pair in training-set order

Importing validates every count against the declared layer sizes before
anything is built, and builds a fresh network object; a failed import
never produces a half-filled network.
"""

import io
import logging
import os
import zipfile
import zlib
from typing import BinaryIO, Dict, Optional, Type, Union

import numpy as np

from .bpnet import BPNet
from .errors import ANNetError, CorruptStorageError, PersistenceError
from .functions import NeighborhoodFunction, TransferFunction
from .network import AbstractNet
from .somnet import SOMNet
from .topology import Layer, LayerKind
from .training_set import TrainingSet

logger = logging.getLogger(__name__)

FORMAT_MARKER = 'ANNET'
FORMAT_VERSION = 1

NET_TYPES: Dict[str, Type[AbstractNet]] = {
    BPNet.net_type: BPNet,
    SOMNet.net_type: SOMNet,
}

PathOrFile = Union[str, os.PathLike, BinaryIO]


def _network_arrays(net: AbstractNet, include_training_set: bool) -> Dict[str, np.ndarray]:
    is_som = isinstance(net, SOMNet)
    arrays: Dict[str, np.ndarray] = {
        'format': np.array(FORMAT_MARKER),
        'version': np.array(FORMAT_VERSION),
        'net_type': np.array(net.net_type),
        'hyperparameters': np.array([
            net.learning_rate,
            net.momentum,
            net.weight_decay,
            net.conscience_rate if is_som else 0.0,
        ]),
        'transfer_function': np.array(net.transfer_function.value),
        'neighborhood_function': np.array(
            net.neighborhood_function.value if is_som else ''
        ),
        'layer_kinds': np.array([layer.kind.value for layer in net.layers]),
        'layer_sizes': np.array(net.layer_sizes, dtype=np.int64),
    }
    for index, connection in enumerate(net.connections):
        arrays[f'edges_{index}'] = connection.weights
        arrays[f'edge_updates_{index}'] = connection.previous_updates
    for index, layer in enumerate(net.layers):
        arrays[f'biases_{index}'] = layer.biases

    if is_som:
        arrays['positions'] = net.positions()
        arrays['conscience'] = net._conscience()

    training_set = net.get_training_set()
    if include_training_set and training_set is not None and len(training_set):
        arrays['ts_inputs'] = training_set.input_matrix()
        if training_set.outputs:
            arrays['ts_outputs'] = training_set.output_matrix()
    return arrays


def export_network(net: AbstractNet, target: PathOrFile,
                   include_training_set: bool = True) -> None:
    """
    Write a network to a file path or a writable binary file object.

    Raises:
        ConfigurationError: If the network is not fully connected
        PersistenceError: If the file cannot be written
    """
    net._check_complete()
    arrays = _network_arrays(net, include_training_set)

    buffer = io.BytesIO()
    np.savez(buffer, **arrays)
    data = buffer.getvalue()

    if hasattr(target, 'write'):
        target.write(data)
        return
    try:
        with open(target, 'wb') as f:
            f.write(data)
    except OSError as e:
        raise PersistenceError(
            f"Cannot write network to '{target}': {e}",
            details={'path': str(target)}
        ) from e
    logger.info(f"Exported {net.net_type} network {net.layer_sizes} to '{target}'")


def _read_bytes(source: PathOrFile) -> bytes:
    if hasattr(source, 'read'):
        return source.read()
    try:
        with open(source, 'rb') as f:
            return f.read()
    except OSError as e:
        raise PersistenceError(
            f"Cannot read network from '{source}': {e}",
            details={'path': str(source)}
        ) from e


def _load_arrays(data: bytes) -> Dict[str, np.ndarray]:
    if not data:
        raise CorruptStorageError("Stored network is empty")
    try:
        with np.load(io.BytesIO(data), allow_pickle=False) as archive:
            return {name: archive[name] for name in archive.files}
    except (ValueError, OSError, EOFError, KeyError,
            zipfile.BadZipFile, zlib.error) as e:
        raise CorruptStorageError(f"Stored network is not readable: {e}") from e


def _require(arrays: Dict[str, np.ndarray], name: str) -> np.ndarray:
    try:
        return arrays[name]
    except KeyError:
        raise CorruptStorageError(f"Stored network has no '{name}' block") from None


def _require_shape(arrays: Dict[str, np.ndarray], name: str, shape: tuple) -> np.ndarray:
    value = _require(arrays, name)
    if value.shape != shape:
        raise CorruptStorageError(
            f"Block '{name}' has shape {value.shape}, expected {shape}",
            details={'block': name}
        )
    if value.dtype.kind not in 'fiu' or not np.all(np.isfinite(value)):
        raise CorruptStorageError(f"Block '{name}' holds non-finite or non-numeric data")
    return value.astype(float)


def _build_network(arrays: Dict[str, np.ndarray]) -> AbstractNet:
    if str(_require(arrays, 'format')) != FORMAT_MARKER:
        raise CorruptStorageError("Not an ANNet file")
    version = int(_require(arrays, 'version'))
    if version != FORMAT_VERSION:
        raise CorruptStorageError(f"Unsupported format version {version}")

    net_type = str(_require(arrays, 'net_type'))
    if net_type not in NET_TYPES:
        raise CorruptStorageError(f"Unknown network type '{net_type}'")

    kinds = _require(arrays, 'layer_kinds')
    sizes = _require(arrays, 'layer_sizes')
    if kinds.ndim != 1 or sizes.ndim != 1 or len(kinds) != len(sizes) or len(sizes) < 2:
        raise CorruptStorageError("Layer descriptors are inconsistent")
    if sizes.dtype.kind not in 'iu' or np.any(sizes < 1):
        raise CorruptStorageError(f"Invalid layer sizes {sizes.tolist()}")

    hyper = _require_shape(arrays, 'hyperparameters', (4,))
    learning_rate, momentum, weight_decay, conscience_rate = hyper.tolist()

    net = NET_TYPES[net_type]()
    try:
        net.set_learning_rate(learning_rate)
        net.set_momentum(momentum)
        net.set_weight_decay(weight_decay)
        net.set_transfer_function(str(_require(arrays, 'transfer_function')))
        if isinstance(net, SOMNet):
            net.set_conscience_rate(conscience_rate)
            net.set_neighborhood_function(str(_require(arrays, 'neighborhood_function')))

        layers = [net.add_layer(Layer(int(size), LayerKind(str(kind))))
                  for kind, size in zip(kinds, sizes)]
        for index, (prev, next_layer) in enumerate(zip(layers, layers[1:])):
            shape = (prev.size, next_layer.size)
            connection = net.connect_layers(prev, next_layer)
            connection.weights[:] = _require_shape(arrays, f'edges_{index}', shape)
            if f'edge_updates_{index}' in arrays:
                connection.previous_updates[:] = _require_shape(
                    arrays, f'edge_updates_{index}', shape
                )
        if f'edges_{len(layers) - 1}' in arrays:
            raise CorruptStorageError("More edge blocks than layer boundaries")
        for index, layer in enumerate(layers):
            layer.biases[:] = _require_shape(arrays, f'biases_{index}', (layer.size,))

        if isinstance(net, SOMNet):
            map_size = layers[-1].size
            positions = _require(arrays, 'positions')
            if positions.ndim != 2:
                raise CorruptStorageError("Map positions must be a matrix")
            layers[-1].set_positions(
                _require_shape(arrays, 'positions', (map_size, positions.shape[1]))
            )
            net.conscience = _require_shape(arrays, 'conscience', (map_size,))
            net._check_complete()
    except CorruptStorageError:
        raise
    except (ANNetError, ValueError) as e:
        raise CorruptStorageError(f"Stored network is inconsistent: {e}") from e

    if 'ts_inputs' in arrays:
        inputs = arrays['ts_inputs']
        outputs = arrays.get('ts_outputs')
        if inputs.ndim != 2 or (outputs is not None and
                                (outputs.ndim != 2 or len(outputs) != len(inputs))):
            raise CorruptStorageError("Embedded training set is inconsistent")
        if inputs.shape[1] != layers[0].size:
            raise CorruptStorageError(
                f"Embedded training inputs have length {inputs.shape[1]}, "
                f"input layer has {layers[0].size} neurons",
                details={'block': 'ts_inputs'}
            )
        # A SOM ignores outputs, so only a BP net constrains their length
        if (outputs is not None and isinstance(net, BPNet)
                and outputs.shape[1] != layers[-1].size):
            raise CorruptStorageError(
                f"Embedded training outputs have length {outputs.shape[1]}, "
                f"output layer has {layers[-1].size} neurons",
                details={'block': 'ts_outputs'}
            )
        try:
            net.set_training_set(TrainingSet.from_arrays(inputs, outputs))
        except (ANNetError, ValueError) as e:
            raise CorruptStorageError(f"Embedded training set is invalid: {e}") from e
    return net


def import_network(source: PathOrFile,
                   expected_type: Optional[Type[AbstractNet]] = None) -> AbstractNet:
    """
    Read a network written by ``export_network``.

    Args:
        source: File path or readable binary file object
        expected_type: If given, the stored network must be of this class

    Returns:
        A new BPNet or SOMNet

    Raises:
        PersistenceError: If the file cannot be read
        CorruptStorageError: If the data is truncated or inconsistent
    """
    arrays = _load_arrays(_read_bytes(source))
    try:
        net = _build_network(arrays)
    except CorruptStorageError:
        raise
    except (ValueError, TypeError) as e:
        raise CorruptStorageError(f"Stored network is malformed: {e}") from e
    if expected_type is not None and not isinstance(net, expected_type):
        raise CorruptStorageError(
            f"Stored network is a '{net.net_type}' network, "
            f"cannot import it into {expected_type.__name__}"
        )
    logger.info(f"Imported {net.net_type} network {net.layer_sizes}")
    return net
