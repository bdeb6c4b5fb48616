"""
conftest.py
~~~~~~~~~~~

Shared fixtures for the engine tests.
"""

import os
import sys

import numpy as np
import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from annet import BPNet, SOMNet, TrainingSet


# Ten fixed pairs for the 3-32-6 reference network
SAMPLE_PAIRS = [
    ([0.0, 0.0, 0.0], [0.1, 0.2, 0.3, 0.4, 0.5, 0.6]),
    ([0.0, 0.0, 1.0], [0.9, 0.8, 0.7, 0.6, 0.5, 0.4]),
    ([0.0, 1.0, 0.0], [0.1, 0.9, 0.1, 0.9, 0.1, 0.9]),
    ([0.0, 1.0, 1.0], [0.9, 0.1, 0.9, 0.1, 0.9, 0.1]),
    ([1.0, 0.0, 0.0], [0.2, 0.2, 0.2, 0.8, 0.8, 0.8]),
    ([1.0, 0.0, 1.0], [0.8, 0.8, 0.8, 0.2, 0.2, 0.2]),
    ([1.0, 1.0, 0.0], [0.5, 0.1, 0.5, 0.1, 0.5, 0.1]),
    ([1.0, 1.0, 1.0], [0.1, 0.5, 0.1, 0.5, 0.1, 0.5]),
    ([0.5, 0.5, 0.5], [0.3, 0.3, 0.7, 0.7, 0.3, 0.3]),
    ([0.5, 0.0, 0.5], [0.7, 0.7, 0.3, 0.3, 0.7, 0.7]),
]


@pytest.fixture
def sample_training_set():
    """The ten reference pairs as a TrainingSet."""
    return TrainingSet(SAMPLE_PAIRS)


@pytest.fixture
def simple_network():
    """A small connected 3-4-2 backpropagation network."""
    return BPNet.create_net([3, 4, 2], seed=42)


@pytest.fixture
def reference_network(sample_training_set):
    """The 3-32-6 network with the reference hyperparameters."""
    net = BPNet.create_net([3, 32, 6], seed=7)
    net.set_learning_rate(0.075)
    net.set_momentum(0)
    net.set_weight_decay(0)
    net.set_training_set(sample_training_set)
    return net


@pytest.fixture
def small_som():
    """A 4x4 map over 3-dimensional inputs with random training data."""
    rng = np.random.default_rng(3)
    som = SOMNet.create_som(3, 4, 4, seed=11)
    som.set_training_set(TrainingSet.from_arrays(rng.random((20, 3))))
    return som


def weights_of(net):
    """Copies of every weight matrix of a network."""
    return [connection.weights.copy() for connection in net.connections]
