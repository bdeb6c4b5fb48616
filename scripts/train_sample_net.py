#!/usr/bin/env python3
"""
Train the sample networks and round-trip them through storage.

Builds a 3-32-6 backpropagation network, trains it on ten fixed pairs,
exports it, imports it again and checks the weights survived. Then trains
a small self-organizing map on two devices.

Usage:
    python scripts/train_sample_net.py [output_dir]
"""

import os
import sys
import tempfile

import numpy as np

from annet import ANNetError, BPNet, Layer, LayerKind, SOMNet, TrainingSet

# Ten fixed (input, output) pairs for the 3-32-6 network
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


def build_bpnet() -> BPNet:
    """Build the 3-32-6 chain layer by layer."""
    net = BPNet(seed=0)
    input_layer = net.add_layer(Layer(3, LayerKind.INPUT))
    hidden_layer = net.add_layer(Layer(32, LayerKind.HIDDEN))
    output_layer = net.add_layer(Layer(6, LayerKind.OUTPUT))
    net.connect_layers(input_layer, hidden_layer)
    net.connect_layers(hidden_layer, output_layer)
    return net


def train_bpnet(output_dir: str) -> None:
    print("\n🧠 Training 3-32-6 backpropagation network...")

    net = build_bpnet()
    net.set_learning_rate(0.075)
    net.set_momentum(0)
    net.set_weight_decay(0)
    net.set_training_set(TrainingSet(SAMPLE_PAIRS))

    errors = net.train_from_data(10000, 0.001)
    print(f"✅ {len(errors)} epochs, error {errors[0]:.4f} → {errors[-1]:.4f}")
    print(net)

    path = os.path.join(output_dir, 'sample_bpnet.annet')
    net.export_to_storage(path)
    print(f"💾 Exported to {path}")

    restored = BPNet()
    restored.import_from_storage(path)
    for original, loaded in zip(net.connections, restored.connections):
        assert np.allclose(original.weights, loaded.weights), "Weights don't match!"
    assert len(restored.get_training_set()) == len(SAMPLE_PAIRS)
    print("✅ Import verified: weights and training set are identical")


def train_som() -> None:
    print("\n🗺️  Training 8x8 self-organizing map on 2 devices...")

    rng = np.random.default_rng(0)
    som = SOMNet.create_som(3, 8, 8, seed=0)
    som.set_neighborhood_function('gaussian')
    som.set_conscience_rate(0.1)
    som.set_num_devices(2)
    som.set_training_set(TrainingSet.from_arrays(rng.random((100, 3))))

    errors = som.train_from_data(20, 0.0)
    print(f"✅ {len(errors)} epochs, quantization error {errors[0]:.4f} → {errors[-1]:.4f}")


def main():
    print("=" * 60)
    print("ANNet sample networks")
    print("=" * 60)

    output_dir = sys.argv[1] if len(sys.argv) > 1 else tempfile.mkdtemp(prefix='annet-')
    os.makedirs(output_dir, exist_ok=True)

    try:
        train_bpnet(output_dir)
        train_som()
    except ANNetError as e:
        print(f"\n❌ {e.kind}: {e.message}")
        sys.exit(1)

    print("\n" + "=" * 60)
    print("✅ DONE")
    print("=" * 60)


if __name__ == '__main__':
    main()
