"""
network.py
~~~~~~~~~~

Base class shared by the backpropagation network and the self-organizing
map: layer bookkeeping, hyperparameters, the attached training set,
forward propagation and the persistence entry points.
"""

import logging
import math
import os
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Tuple

import numpy as np

from .errors import (
    ConfigurationError,
    DimensionMismatchError,
    MissingTrainingDataError,
    NumericInstabilityError,
)
from .functions import TransferFunction, resolve_transfer_function
from .topology import Connection, Layer, LayerKind
from .training_set import TrainingSet

logger = logging.getLogger(__name__)

# Called once per finished epoch with (epoch index, epoch error)
EpochCallback = Callable[[int, float], None]


def default_num_devices() -> int:
    """Device count used when none is configured (``ANNET_DEVICES``)."""
    value = os.getenv('ANNET_DEVICES', '1')
    try:
        return max(1, int(value))
    except ValueError:
        logger.warning(f"Ignoring invalid ANNET_DEVICES value '{value}'")
        return 1


class AbstractNet:
    """
    A chain of layers plus the hyperparameters used to train it.

    Subclasses implement ``train_from_data``.
    """

    net_type = 'abstract'
    default_learning_rate = 0.01

    def __init__(self, seed: Optional[int] = None):
        self._layers: List[Layer] = []
        self._rng = np.random.default_rng(seed)
        self._training_set: Optional[TrainingSet] = None
        self._training = False

        self._learning_rate = self.default_learning_rate
        self._momentum = 0.0
        self._weight_decay = 0.0
        self._transfer = resolve_transfer_function(TransferFunction.SIGMOID)
        self._num_devices = default_num_devices()

        # Error sequence of the most recent train_from_data call
        self.errors: List[float] = []

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    @property
    def layers(self) -> Tuple[Layer, ...]:
        return tuple(self._layers)

    @property
    def input_layer(self) -> Optional[Layer]:
        return self._layers[0] if self._layers else None

    @property
    def output_layer(self) -> Optional[Layer]:
        return self._layers[-1] if self._layers else None

    @property
    def connections(self) -> List[Connection]:
        return [layer.connection for layer in self._layers[:-1]
                if layer.connection is not None]

    @property
    def layer_sizes(self) -> List[int]:
        return [layer.size for layer in self._layers]

    def _check_mutable(self) -> None:
        if self._training:
            raise ConfigurationError(
                "The network cannot be reconfigured while it is training"
            )

    def add_layer(self, layer: Layer) -> Layer:
        """
        Append a layer to the end of the chain.

        Raises:
            ConfigurationError: If the layer breaks the input -> hidden ->
                output ordering or already belongs to a network
        """
        self._check_mutable()
        if not isinstance(layer, Layer):
            raise ConfigurationError(f"Expected a Layer, got {type(layer).__name__}")
        if layer.network is not None:
            raise ConfigurationError("Layer already belongs to a network")

        if not self._layers:
            if layer.kind is not LayerKind.INPUT:
                raise ConfigurationError("The first layer must be an input layer")
        else:
            last = self._layers[-1]
            if layer.kind is LayerKind.INPUT:
                raise ConfigurationError("Only the first layer can be an input layer")
            if last.kind is LayerKind.OUTPUT:
                raise ConfigurationError("No layer can follow the output layer")
            if last.connection is not None and last.connection.target is not layer:
                raise ConfigurationError(
                    "The previous layer is connected to a different layer"
                )

        layer.network = self
        self._layers.append(layer)
        logger.debug(
            f"Added {layer.kind.value} layer #{len(self._layers) - 1} "
            f"with {layer.size} neurons"
        )
        return layer

    def connect_layers(self, prev: Layer, next_layer: Layer,
                       low: float = -0.5, high: float = 0.5) -> Connection:
        """
        Connect two consecutive layers with randomly initialized weights.

        Raises:
            ConfigurationError: If either layer is not part of this network
                or ``next_layer`` does not directly follow ``prev``
        """
        self._check_mutable()
        try:
            prev_index = next(i for i, l in enumerate(self._layers) if l is prev)
            next_index = next(i for i, l in enumerate(self._layers) if l is next_layer)
        except StopIteration:
            raise ConfigurationError(
                "Both layers must be added to the network before connecting"
            ) from None
        if next_index != prev_index + 1:
            raise ConfigurationError(
                f"Layer {next_index} does not directly follow layer {prev_index}",
                details={'prev': prev_index, 'next': next_index}
            )
        return prev.connect_layer(next_layer, rng=self._rng, low=low, high=high)

    def connect_all(self, low: float = -0.5, high: float = 0.5) -> None:
        """Connect every consecutive layer pair that is not connected yet."""
        for prev, next_layer in zip(self._layers, self._layers[1:]):
            if prev.connection is None:
                self.connect_layers(prev, next_layer, low=low, high=high)

    def _check_complete(self) -> None:
        if len(self._layers) < 2:
            raise ConfigurationError("A network needs at least an input and an output layer")
        if self._layers[-1].kind is not LayerKind.OUTPUT:
            raise ConfigurationError("The last layer must be an output layer")
        for index, layer in enumerate(self._layers[:-1]):
            if layer.connection is None:
                raise ConfigurationError(
                    f"Layer {index} is not connected to layer {index + 1}"
                )

    # ------------------------------------------------------------------
    # Hyperparameters
    # ------------------------------------------------------------------

    @property
    def learning_rate(self) -> float:
        return self._learning_rate

    def set_learning_rate(self, value: float) -> None:
        self._check_mutable()
        value = float(value)
        if not math.isfinite(value) or value <= 0:
            raise ConfigurationError(f"Learning rate must be a positive number, got {value}")
        self._learning_rate = value

    @property
    def momentum(self) -> float:
        return self._momentum

    def set_momentum(self, value: float) -> None:
        self._check_mutable()
        value = float(value)
        if not 0.0 <= value < 1.0:
            raise ConfigurationError(f"Momentum must be in [0, 1), got {value}")
        self._momentum = value

    @property
    def weight_decay(self) -> float:
        return self._weight_decay

    def set_weight_decay(self, value: float) -> None:
        self._check_mutable()
        value = float(value)
        if not 0.0 <= value < 1.0:
            raise ConfigurationError(f"Weight decay must be in [0, 1), got {value}")
        self._weight_decay = value

    @property
    def transfer_function(self) -> TransferFunction:
        return self._transfer.kind

    def set_transfer_function(self, name) -> None:
        self._check_mutable()
        self._transfer = resolve_transfer_function(name)

    @property
    def num_devices(self) -> int:
        return self._num_devices

    def set_num_devices(self, count: int) -> None:
        self._check_mutable()
        if isinstance(count, bool) or not isinstance(count, (int, np.integer)) or count < 1:
            raise ConfigurationError(f"Device count must be a positive integer, got {count}")
        self._num_devices = int(count)

    # ------------------------------------------------------------------
    # Training data
    # ------------------------------------------------------------------

    def set_training_set(self, training_set: Optional[TrainingSet]) -> None:
        self._check_mutable()
        if training_set is not None and not isinstance(training_set, TrainingSet):
            raise ConfigurationError(
                f"Expected a TrainingSet, got {type(training_set).__name__}"
            )
        self._training_set = training_set

    def get_training_set(self) -> Optional[TrainingSet]:
        return self._training_set

    def _require_training_set(self, need_outputs: bool) -> TrainingSet:
        """
        Return the attached training set after checking it fits the net.

        Raises:
            MissingTrainingDataError: If no (or an empty) set is attached
            DimensionMismatchError: If any vector length disagrees with the
                input or output layer size
        """
        training_set = self._training_set
        if training_set is None or len(training_set) == 0:
            raise MissingTrainingDataError("No training data attached to the network")

        n_in = self.input_layer.size
        if training_set.input_size != n_in:
            raise DimensionMismatchError(
                f"Training input vectors have length {training_set.input_size}, "
                f"input layer has {n_in} neurons",
                expected=n_in,
                actual=training_set.input_size
            )
        if need_outputs:
            n_out = self.output_layer.size
            if len(training_set.outputs) != len(training_set):
                raise DimensionMismatchError(
                    f"Training set has {len(training_set)} inputs but "
                    f"{len(training_set.outputs)} outputs",
                    expected=len(training_set),
                    actual=len(training_set.outputs)
                )
            if training_set.output_size != n_out:
                raise DimensionMismatchError(
                    f"Training output vectors have length {training_set.output_size}, "
                    f"output layer has {n_out} neurons",
                    expected=n_out,
                    actual=training_set.output_size
                )
        return training_set

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    def _check_input(self, input_vector) -> np.ndarray:
        vector = np.asarray(input_vector, dtype=float).reshape(-1)
        expected = self.input_layer.size
        if vector.shape[0] != expected:
            raise DimensionMismatchError(
                f"Input vector has length {vector.shape[0]}, "
                f"input layer has {expected} neurons",
                expected=expected,
                actual=vector.shape[0]
            )
        return vector

    def _forward(self, vector: np.ndarray) -> List[np.ndarray]:
        """Activations of every layer for one input, without storing them."""
        function = self._transfer.function
        activations = [vector]
        for layer in self._layers[:-1]:
            target = layer.connection.target
            net_input = activations[-1] @ layer.connection.weights + target.biases
            activations.append(function(net_input))
        return activations

    def propagate_forward(self, input_vector) -> np.ndarray:
        """
        Run one input through the chain in layer order.

        Returns:
            numpy.ndarray: activations of the output layer

        Raises:
            ConfigurationError: If the chain is incomplete
            DimensionMismatchError: If the input length is wrong; no
                activation is modified in that case
        """
        self._check_complete()
        vector = self._check_input(input_vector)
        activations = self._forward(vector)
        for layer, values in zip(self._layers, activations):
            layer.activations[:] = values
        return self.get_output()

    def get_output(self) -> np.ndarray:
        return self.output_layer.activations.copy()

    # ------------------------------------------------------------------
    # Training helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _training_session(self) -> Iterator[None]:
        if self._training:
            raise ConfigurationError("The network is already training")
        self._training = True
        try:
            yield
        finally:
            self._training = False

    def _snapshot(self) -> list:
        state = []
        for connection in self.connections:
            state.append((connection.weights.copy(), connection.previous_updates.copy()))
        for layer in self._layers:
            state.append((layer.biases.copy(), layer.bias_updates.copy()))
        return state

    def _restore(self, state: list) -> None:
        connections = self.connections
        for connection, (weights, updates) in zip(connections, state):
            connection.weights[:] = weights
            connection.previous_updates[:] = updates
        for layer, (biases, updates) in zip(self._layers, state[len(connections):]):
            layer.biases[:] = biases
            layer.bias_updates[:] = updates

    def _check_finite(self, epoch: int) -> None:
        for index, connection in enumerate(self.connections):
            if not np.all(np.isfinite(connection.weights)):
                raise NumericInstabilityError(
                    f"Non-finite weight between layers {index} and {index + 1} "
                    f"in epoch {epoch}",
                    epoch=epoch
                )
        for index, layer in enumerate(self._layers):
            if not np.all(np.isfinite(layer.biases)):
                raise NumericInstabilityError(
                    f"Non-finite bias in layer {index} in epoch {epoch}",
                    epoch=epoch
                )

    def train_from_data(self, max_cycles: int, target_error: float,
                        callback: Optional[EpochCallback] = None) -> List[float]:
        raise NotImplementedError

    @staticmethod
    def _check_cycles(max_cycles: int, target_error: float) -> None:
        if (isinstance(max_cycles, bool) or not isinstance(max_cycles, (int, np.integer))
                or max_cycles < 1):
            raise ConfigurationError(f"max_cycles must be a positive integer, got {max_cycles!r}")
        if (isinstance(target_error, bool)
                or not isinstance(target_error, (int, float, np.integer, np.floating))
                or not math.isfinite(target_error) or target_error < 0):
            raise ConfigurationError(
                f"target_error must be a non-negative number, got {target_error}"
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_to_storage(self, target, include_training_set: bool = True) -> None:
        """Write the network to a file path or binary file object."""
        from .persistence import export_network
        export_network(self, target, include_training_set=include_training_set)

    def import_from_storage(self, source) -> None:
        """
        Replace this network's state with the one stored in ``source``.

        On failure the network is left exactly as it was.
        """
        from .persistence import import_network
        self._check_mutable()
        loaded = import_network(source, expected_type=type(self))
        self._adopt(loaded)

    def _adopt(self, other: 'AbstractNet') -> None:
        self.__dict__.update(other.__dict__)
        for layer in self._layers:
            layer.network = self

    # ------------------------------------------------------------------

    def __str__(self) -> str:
        lines = [f"{type(self).__name__} ({self.net_type})"]
        lines.append(
            f"  learning_rate={self._learning_rate} momentum={self._momentum} "
            f"weight_decay={self._weight_decay} "
            f"transfer={self._transfer.kind.value}"
        )
        for index, layer in enumerate(self._layers):
            lines.append(f"  layer {index}: {layer.kind.value:<6} size={layer.size}")
        return '\n'.join(lines)
