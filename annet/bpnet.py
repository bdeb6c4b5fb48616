"""
bpnet.py
~~~~~~~~

Multi-layer feed-forward network trained by online backpropagation with
momentum and weight decay.
"""

import logging
import math
from typing import List, Optional, Sequence

import numpy as np

from .errors import ConfigurationError, NumericInstabilityError
from .network import AbstractNet, EpochCallback
from .topology import Layer, LayerKind

logger = logging.getLogger(__name__)


class BPNet(AbstractNet):
    """
    Backpropagation network.

    Example:
        >>> net = BPNet.create_net([3, 32, 6], seed=1)
        >>> net.set_learning_rate(0.075)
        >>> net.set_training_set(training_set)
        >>> errors = net.train_from_data(10000, 0.001)
    """

    net_type = 'bp'
    default_learning_rate = 0.01

    @classmethod
    def create_net(cls, sizes: Sequence[int], seed: Optional[int] = None) -> 'BPNet':
        """
        Build and connect a chain from a list of layer sizes.

        The first size is the input layer, the last the output layer and
        everything in between a hidden layer.
        """
        if len(sizes) < 2:
            raise ConfigurationError(
                f"A network needs at least 2 layers, got {list(sizes)}"
            )
        net = cls(seed=seed)
        last = len(sizes) - 1
        for index, size in enumerate(sizes):
            if index == 0:
                kind = LayerKind.INPUT
            elif index == last:
                kind = LayerKind.OUTPUT
            else:
                kind = LayerKind.HIDDEN
            net.add_layer(Layer(size, kind))
        net.connect_all()
        logger.info(f"Created BPNet with architecture {list(sizes)}")
        return net

    def _train_pair(self, inputs: np.ndarray, expected: np.ndarray) -> np.ndarray:
        """Forward pass, backward pass and weight update for one pair.

        Returns the output error (expected - actual) before the update.
        """
        derivative = self._transfer.derivative
        lr = self._learning_rate
        momentum = self._momentum
        decay = self._weight_decay

        activations = self._forward(inputs)
        error = expected - activations[-1]
        delta = error * derivative(activations[-1])

        for index in range(len(self._layers) - 2, -1, -1):
            layer = self._layers[index]
            connection = layer.connection
            target = connection.target
            source_activation = activations[index]

            # Delta of the source layer uses the weights before this update
            if index > 0:
                prev_delta = (connection.weights @ delta) * derivative(source_activation)

            update = (lr * np.outer(source_activation, delta)
                      + momentum * connection.previous_updates
                      - decay * connection.weights)
            connection.weights += update
            connection.previous_updates = update

            bias_update = lr * delta + momentum * target.bias_updates
            target.biases += bias_update
            target.bias_updates = bias_update

            if index > 0:
                delta = prev_delta

        for layer, values in zip(self._layers, activations):
            layer.activations[:] = values
        return error

    def train_from_data(self, max_cycles: int, target_error: float,
                        callback: Optional[EpochCallback] = None) -> List[float]:
        """
        Train on the attached training set.

        Args:
            max_cycles: Maximum number of epochs
            target_error: Training stops once an epoch's RMS error is below
                this value
            callback: Called as ``callback(epoch, error)`` after each epoch

        Returns:
            list: RMS error of every finished epoch (at most ``max_cycles``)

        Raises:
            MissingTrainingDataError: If no training set is attached
            DimensionMismatchError: If a pair does not fit the layer sizes
            NumericInstabilityError: If a weight becomes non-finite; the
                weights are restored to their state before that epoch
        """
        self._check_cycles(max_cycles, target_error)
        self._check_complete()
        training_set = self._require_training_set(need_outputs=True)
        pairs = list(training_set.pairs())
        n_values = len(pairs) * self.output_layer.size

        errors: List[float] = []
        with self._training_session():
            for epoch in range(int(max_cycles)):
                snapshot = self._snapshot()
                squared = 0.0
                with np.errstate(over='ignore', invalid='ignore'):
                    for inputs, expected in pairs:
                        error = self._train_pair(inputs, expected)
                        squared += float(np.dot(error, error))
                epoch_error = math.sqrt(squared / n_values)

                try:
                    self._check_finite(epoch)
                    if not math.isfinite(epoch_error):
                        raise NumericInstabilityError(
                            f"Epoch error is not finite in epoch {epoch}", epoch=epoch
                        )
                except NumericInstabilityError:
                    self._restore(snapshot)
                    logger.warning(f"Training diverged in epoch {epoch}, weights restored")
                    raise

                errors.append(epoch_error)
                logger.debug(f"Epoch {epoch}: error {epoch_error:.6f}")
                if callback is not None:
                    callback(epoch, epoch_error)
                if epoch_error < target_error:
                    break

        self.errors = errors
        logger.info(
            f"BPNet training finished after {len(errors)} epoch(s), "
            f"final error {errors[-1]:.6f}"
        )
        return errors
