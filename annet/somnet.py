"""
somnet.py
~~~~~~~~~

Self-organizing map trained by competitive learning.

The map has two layers: the input layer and the output (map) layer. The
weight vector of map neuron ``j`` is column ``j`` of the edge matrix
between them, and every map neuron carries a grid position used for the
neighborhood distance to the BMU.

Decay schedule, with ``t`` the epoch index and ``T`` the epoch count of
the call::

    sigma_0 = max(1, largest grid extent / 2)
    lambda  = T / ln(sigma_0)      (T when sigma_0 <= e)
    sigma_t = sigma_0 * exp(-t / lambda)
    lr_t    = lr_0 * exp(-t / T)

Both are strictly decreasing in ``t``.
"""

import logging
import math
from typing import List, Optional

import numpy as np

from .errors import ConfigurationError, NumericInstabilityError
from .functions import NeighborhoodFunction, resolve_neighborhood_function
from .gpgpu import (
    BMUExport,
    DevicePool,
    local_bmu,
    merge_bmus,
    merge_exports,
    split_network,
    squared_distances,
)
from .network import AbstractNet, EpochCallback
from .topology import Layer, LayerKind

logger = logging.getLogger(__name__)

# Step size of the win-frequency estimate used by the conscience
CONSCIENCE_STEP = 0.0001


class SOMNet(AbstractNet):
    """Kohonen self-organizing map with a DeSieno conscience."""

    net_type = 'som'
    default_learning_rate = 0.5

    def __init__(self, seed: Optional[int] = None):
        super().__init__(seed=seed)
        self._neighborhood_kind = NeighborhoodFunction.GAUSSIAN
        self._neighborhood = resolve_neighborhood_function(self._neighborhood_kind)
        self._conscience_rate = 0.0
        self._sigma_0: Optional[float] = None
        self.conscience: Optional[np.ndarray] = None

    @classmethod
    def create_som(cls, input_size: int, width: int, height: int = 1,
                   seed: Optional[int] = None) -> 'SOMNet':
        """
        Build a map of ``width x height`` neurons on a rectangular grid.

        Neuron ``i`` sits at ``(i % width, i // width)``.
        """
        net = cls(seed=seed)
        input_layer = net.add_layer(Layer(input_size, LayerKind.INPUT))
        map_layer = net.add_layer(Layer(width * height, LayerKind.OUTPUT))
        ids = np.arange(width * height)
        map_layer.set_positions(np.column_stack([ids % width, ids // width]))
        net.connect_layers(input_layer, map_layer)
        logger.info(
            f"Created SOMNet with {input_size} inputs and a "
            f"{width}x{height} map"
        )
        return net

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def neighborhood_function(self) -> NeighborhoodFunction:
        return self._neighborhood_kind

    def set_neighborhood_function(self, name) -> None:
        self._check_mutable()
        self._neighborhood = resolve_neighborhood_function(name)
        self._neighborhood_kind = NeighborhoodFunction(name)

    @property
    def conscience_rate(self) -> float:
        return self._conscience_rate

    def set_conscience_rate(self, value: float) -> None:
        self._check_mutable()
        value = float(value)
        if not math.isfinite(value) or value < 0:
            raise ConfigurationError(f"Conscience rate must be non-negative, got {value}")
        self._conscience_rate = value

    def set_sigma0(self, value: Optional[float]) -> None:
        """Override the initial neighborhood radius (None restores the default)."""
        self._check_mutable()
        if value is not None and (not math.isfinite(float(value)) or value <= 0):
            raise ConfigurationError(f"Initial sigma must be positive, got {value}")
        self._sigma_0 = None if value is None else float(value)

    def connect_layers(self, prev: Layer, next_layer: Layer,
                       low: float = 0.0, high: float = 1.0):
        connection = super().connect_layers(prev, next_layer, low=low, high=high)
        self.conscience = None
        return connection

    # ------------------------------------------------------------------
    # Map state
    # ------------------------------------------------------------------

    def _check_complete(self) -> None:
        super()._check_complete()
        if len(self._layers) != 2:
            raise ConfigurationError(
                f"A SOM has exactly an input and a map layer, got {len(self._layers)} layers"
            )

    @property
    def map_layer(self) -> Layer:
        return self._layers[-1]

    @property
    def weights(self) -> np.ndarray:
        """Edge matrix of shape (input size, map size)."""
        return self._layers[0].connection.weights

    def positions(self) -> np.ndarray:
        layer = self.map_layer
        if layer.positions is None:
            # Neurons without explicit positions lie on a line
            layer.set_positions(np.arange(layer.size, dtype=float))
        return layer.positions

    def _conscience(self) -> np.ndarray:
        size = self.map_layer.size
        if self.conscience is None or self.conscience.shape != (size,):
            self.conscience = np.full(size, 1.0 / size)
        return self.conscience

    def _conscience_bias(self) -> np.ndarray:
        if self._conscience_rate == 0.0:
            return np.zeros(self.map_layer.size)
        size = self.map_layer.size
        return self._conscience_rate * (1.0 / size - self._conscience())

    def sigma_at(self, epoch: int, max_cycles: int) -> float:
        sigma_0 = self._sigma_0
        if sigma_0 is None:
            extent = np.ptp(self.positions(), axis=0).max() if self.map_layer.size > 1 else 0.0
            sigma_0 = max(1.0, float(extent) / 2.0)
        time_constant = max_cycles / math.log(sigma_0) if sigma_0 > math.e else max_cycles
        return sigma_0 * math.exp(-epoch / time_constant)

    def learning_rate_at(self, epoch: int, max_cycles: int) -> float:
        return self._learning_rate * math.exp(-epoch / max_cycles)

    # ------------------------------------------------------------------
    # Propagation
    # ------------------------------------------------------------------

    def find_bmu(self, input_vector) -> BMUExport:
        """
        Best matching unit for one input on the current map.

        Ties are broken towards the lowest neuron id. Does not modify the
        map or the conscience.
        """
        self._check_complete()
        vector = self._check_input(input_vector)
        return local_bmu(self.weights, self.positions(), self._conscience_bias(), vector)

    def propagate_forward(self, input_vector) -> np.ndarray:
        """Map activations are the Euclidean distances to the input."""
        self._check_complete()
        vector = self._check_input(input_vector)
        self.input_layer.activations[:] = vector
        self.map_layer.activations[:] = np.sqrt(squared_distances(vector, self.weights))
        return self.get_output()

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _snapshot(self) -> list:
        state = super()._snapshot()
        state.append(self._conscience().copy())
        return state

    def _restore(self, state: list) -> None:
        super()._restore(state[:-1])
        self.conscience = state[-1]

    def _train_epoch(self, pool: DevicePool, inputs: List[np.ndarray],
                     learning_rate: float, sigma: float) -> float:
        """One pass over the inputs; returns the mean quantization error."""
        size = self.map_layer.size
        gamma = self._conscience_rate
        kernel = self._neighborhood
        conscience_step = CONSCIENCE_STEP if gamma > 0 else 0.0

        exports = split_network(self.weights, self.positions(), self._conscience(),
                                self._num_devices)
        total = 0.0
        try:
            for vector in inputs:
                for export in exports:
                    export.set_input(vector)
                candidates = pool.run(
                    lambda export: export.find_local_bmu(size, gamma), exports
                )
                bmu = merge_bmus(candidates)
                total += math.sqrt(bmu.distance)
                pool.run(
                    lambda export: export.apply_update(
                        bmu, learning_rate, sigma, kernel, conscience_step
                    ),
                    exports
                )
            merge_exports(exports, self.weights, self.conscience)
        finally:
            for export in exports:
                export.release()
        return total / len(inputs)

    def train_from_data(self, max_cycles: int, target_error: float,
                        callback: Optional[EpochCallback] = None) -> List[float]:
        """
        Train the map on the inputs of the attached training set.

        Returns:
            list: mean quantization error of every finished epoch

        Raises:
            MissingTrainingDataError: If no training set is attached
            DimensionMismatchError: If an input does not fit the input layer
            DeviceError: If the map has fewer neurons than devices
            NumericInstabilityError: If a weight becomes non-finite; the map
                is restored to its state before that epoch
        """
        self._check_cycles(max_cycles, target_error)
        self._check_complete()
        training_set = self._require_training_set(need_outputs=False)
        inputs = training_set.inputs
        max_cycles = int(max_cycles)

        errors: List[float] = []
        with self._training_session(), DevicePool(self._num_devices) as pool:
            for epoch in range(max_cycles):
                sigma = self.sigma_at(epoch, max_cycles)
                learning_rate = self.learning_rate_at(epoch, max_cycles)
                snapshot = self._snapshot()

                with np.errstate(over='ignore', invalid='ignore'):
                    epoch_error = self._train_epoch(pool, inputs, learning_rate, sigma)

                try:
                    self._check_finite(epoch)
                    if not math.isfinite(epoch_error):
                        raise NumericInstabilityError(
                            f"Quantization error is not finite in epoch {epoch}",
                            epoch=epoch
                        )
                except NumericInstabilityError:
                    self._restore(snapshot)
                    logger.warning(f"SOM training diverged in epoch {epoch}, map restored")
                    raise

                errors.append(epoch_error)
                logger.debug(
                    f"Epoch {epoch}: error {epoch_error:.6f} sigma {sigma:.4f} "
                    f"lr {learning_rate:.4f}"
                )
                if callback is not None:
                    callback(epoch, epoch_error)
                if epoch_error < target_error:
                    break

        self.errors = errors
        logger.info(
            f"SOMNet training finished after {len(errors)} epoch(s) on "
            f"{self._num_devices} device(s), final error {errors[-1]:.6f}"
        )
        return errors
