"""
topology.py
~~~~~~~~~~~

Layers, neurons and edges of a chain-shaped network.

A layer keeps the state of its neurons in contiguous numpy arrays
(activations, biases and, for SOM layers, grid positions). The edges
between two consecutive layers live in a ``Connection`` holding a dense
``source_size x target_size`` weight matrix and the matrix of previously
applied updates used for momentum. ``Neuron`` and ``Edge`` objects are
lightweight views onto those arrays.
"""

import logging
from enum import Enum
from typing import Iterator, Optional

import numpy as np

from .errors import ConfigurationError, DimensionMismatchError

logger = logging.getLogger(__name__)


class LayerKind(Enum):
    """Position of a layer in the chain."""

    INPUT = 'input'
    HIDDEN = 'hidden'
    OUTPUT = 'output'


class Neuron:
    """View onto one neuron of a layer."""

    __slots__ = ('layer', 'id')

    def __init__(self, layer: 'Layer', neuron_id: int):
        self.layer = layer
        self.id = neuron_id

    @property
    def activation(self) -> float:
        return float(self.layer.activations[self.id])

    @property
    def bias(self) -> float:
        return float(self.layer.biases[self.id])

    @bias.setter
    def bias(self, value: float) -> None:
        self.layer.biases[self.id] = value

    @property
    def position(self) -> Optional[np.ndarray]:
        if self.layer.positions is None:
            return None
        return self.layer.positions[self.id]

    def __repr__(self) -> str:
        return f"Neuron(id={self.id}, activation={self.activation:.4f})"


class Edge:
    """View onto the weighted edge between two neurons."""

    __slots__ = ('connection', 'source_id', 'target_id')

    def __init__(self, connection: 'Connection', source_id: int, target_id: int):
        self.connection = connection
        self.source_id = source_id
        self.target_id = target_id

    @property
    def weight(self) -> float:
        return float(self.connection.weights[self.source_id, self.target_id])

    @weight.setter
    def weight(self, value: float) -> None:
        self.connection.weights[self.source_id, self.target_id] = value

    @property
    def previous_update(self) -> float:
        return float(
            self.connection.previous_updates[self.source_id, self.target_id]
        )

    def __repr__(self) -> str:
        return (
            f"Edge({self.source_id} -> {self.target_id}, "
            f"weight={self.weight:.4f})"
        )


class Connection:
    """Full bipartite edge set between two adjacent layers."""

    def __init__(self, source: 'Layer', target: 'Layer', weights: np.ndarray):
        expected = (source.size, target.size)
        if weights.shape != expected:
            raise DimensionMismatchError(
                f"Weight matrix has shape {weights.shape}, expected {expected}"
            )
        self.source = source
        self.target = target
        self.weights = np.array(weights, dtype=float)
        self.previous_updates = np.zeros_like(self.weights)

    def edges(self) -> Iterator[Edge]:
        """Iterate over all edges, ordered by (source id, target id)."""
        for source_id in range(self.source.size):
            for target_id in range(self.target.size):
                yield Edge(self, source_id, target_id)

    def edge(self, source_id: int, target_id: int) -> Edge:
        if not (0 <= source_id < self.source.size
                and 0 <= target_id < self.target.size):
            raise IndexError(f"No edge {source_id} -> {target_id}")
        return Edge(self, source_id, target_id)

    def __len__(self) -> int:
        return self.weights.size


class Layer:
    """
    An ordered, fixed-size group of neurons.

    Args:
        size: Number of neurons, must be positive
        kind: LayerKind or its string value
    """

    def __init__(self, size: int, kind=LayerKind.HIDDEN):
        if isinstance(size, bool) or not isinstance(size, (int, np.integer)):
            raise ConfigurationError(f"Layer size must be an integer, got {size!r}")
        if size < 1:
            raise ConfigurationError(
                f"Layer size must be positive, got {size}",
                details={'size': int(size)}
            )
        try:
            kind = LayerKind(kind)
        except ValueError:
            raise ConfigurationError(f"Unknown layer kind '{kind}'") from None

        self._size = int(size)
        self.kind = kind
        self.activations = np.zeros(self._size)
        self.biases = np.zeros(self._size)
        self.bias_updates = np.zeros(self._size)
        self.positions: Optional[np.ndarray] = None
        self.connection: Optional[Connection] = None
        self.network = None

    @property
    def size(self) -> int:
        return self._size

    @property
    def next_layer(self) -> Optional['Layer']:
        return self.connection.target if self.connection else None

    @property
    def neurons(self):
        return [Neuron(self, i) for i in range(self._size)]

    def __len__(self) -> int:
        return self._size

    def set_positions(self, positions) -> None:
        """Assign a grid position vector to every neuron (SOM layers)."""
        positions = np.asarray(positions, dtype=float)
        if positions.ndim == 1:
            positions = positions.reshape(-1, 1)
        if positions.ndim != 2 or positions.shape[0] != self._size:
            raise DimensionMismatchError(
                f"Expected {self._size} position vectors, got shape {positions.shape}",
                expected=self._size,
                actual=positions.shape[0]
            )
        self.positions = positions.copy()

    def connect_layer(
        self,
        target: 'Layer',
        rng: Optional[np.random.Generator] = None,
        low: float = -0.5,
        high: float = 0.5
    ) -> Connection:
        """
        Create the full edge set from this layer to ``target``.

        Weights are drawn uniformly from ``[low, high]``. Connecting to the
        layer already connected re-randomizes its weights; connecting to a
        different layer is rejected because the topology is a chain.
        """
        if target is self:
            raise ConfigurationError("A layer cannot be connected to itself")
        if self.kind is LayerKind.OUTPUT:
            raise ConfigurationError("An output layer has no successor")
        if target.kind is LayerKind.INPUT:
            raise ConfigurationError("An input layer cannot be a connection target")
        if self.connection is not None and self.connection.target is not target:
            raise ConfigurationError(
                "Layer is already connected to another layer; "
                "only chain topologies are supported"
            )

        rng = rng or np.random.default_rng()
        weights = rng.uniform(low, high, size=(self._size, target.size))
        self.connection = Connection(self, target, weights)
        logger.debug(
            f"Connected {self.kind.value} layer ({self._size}) to "
            f"{target.kind.value} layer ({target.size})"
        )
        return self.connection

    def __repr__(self) -> str:
        return f"Layer(size={self._size}, kind={self.kind.value})"
