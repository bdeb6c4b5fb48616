"""
test_topology.py
~~~~~~~~~~~~~~~~

Unit tests for layers, edges, transfer functions and forward propagation.
"""

import numpy as np
import pytest

from annet import (
    BPNet,
    ConfigurationError,
    DimensionMismatchError,
    Layer,
    LayerKind,
    TransferFunction,
)
from annet.functions import (
    NeighborhoodFunction,
    bubble,
    cut_gaussian,
    epanechnikov,
    gaussian,
    mexican_hat,
    resolve_neighborhood_function,
    resolve_transfer_function,
)


@pytest.mark.unit
class TestLayers:
    """Test layer construction and chain building."""

    def test_zero_size_layer_rejected(self):
        with pytest.raises(ConfigurationError):
            Layer(0, LayerKind.HIDDEN)

    def test_unknown_layer_kind_rejected(self):
        with pytest.raises(ConfigurationError):
            Layer(3, 'sideways')

    def test_layer_size_is_fixed(self):
        layer = Layer(5, 'hidden')
        with pytest.raises(AttributeError):
            layer.size = 6
        assert len(layer.neurons) == 5
        assert [n.id for n in layer.neurons] == [0, 1, 2, 3, 4]

    def test_first_layer_must_be_input(self):
        net = BPNet()
        with pytest.raises(ConfigurationError):
            net.add_layer(Layer(3, LayerKind.HIDDEN))
        assert net.layers == ()

    def test_no_layer_after_output(self):
        net = BPNet()
        net.add_layer(Layer(3, LayerKind.INPUT))
        net.add_layer(Layer(2, LayerKind.OUTPUT))
        with pytest.raises(ConfigurationError):
            net.add_layer(Layer(2, LayerKind.HIDDEN))
        assert len(net.layers) == 2

    def test_connect_creates_full_bipartite_edges(self):
        net = BPNet(seed=1)
        first = net.add_layer(Layer(3, LayerKind.INPUT))
        second = net.add_layer(Layer(4, LayerKind.OUTPUT))
        connection = net.connect_layers(first, second)

        edges = list(connection.edges())
        assert len(edges) == 12
        assert {(e.source_id, e.target_id) for e in edges} == {
            (s, t) for s in range(3) for t in range(4)
        }
        assert all(-0.5 <= e.weight <= 0.5 for e in edges)
        assert first.next_layer is second

    def test_connect_out_of_order_rejected(self):
        net = BPNet(seed=1)
        first = net.add_layer(Layer(3, LayerKind.INPUT))
        hidden = net.add_layer(Layer(4, LayerKind.HIDDEN))
        last = net.add_layer(Layer(2, LayerKind.OUTPUT))

        with pytest.raises(ConfigurationError):
            net.connect_layers(first, last)
        with pytest.raises(ConfigurationError):
            net.connect_layers(hidden, first)

        assert all(layer.connection is None for layer in net.layers)

    def test_connect_layer_not_in_network_rejected(self):
        net = BPNet()
        first = net.add_layer(Layer(3, LayerKind.INPUT))
        with pytest.raises(ConfigurationError):
            net.connect_layers(first, Layer(2, LayerKind.OUTPUT))
        assert first.connection is None

    def test_layers_connected_before_adding(self):
        """Test the layer-first style: connect, then add in order."""
        first = Layer(3, LayerKind.INPUT)
        second = Layer(2, LayerKind.OUTPUT)
        first.connect_layer(second)

        net = BPNet()
        net.add_layer(first)
        net.add_layer(second)
        assert net.propagate_forward([1, 2, 3]).shape == (2,)

    def test_edge_view_writes_through(self, simple_network):
        connection = simple_network.connections[0]
        edge = connection.edge(1, 2)
        edge.weight = 0.25
        assert connection.weights[1, 2] == 0.25


@pytest.mark.unit
class TestPropagation:
    """Test forward propagation."""

    @pytest.mark.parametrize('sizes', [
        [1, 1],
        [3, 2],
        [3, 4, 2],
        [5, 8, 8, 3],
        [2, 16, 4, 4, 7],
    ])
    def test_output_length_matches_output_layer(self, sizes):
        net = BPNet.create_net(sizes, seed=0)
        output = net.propagate_forward(np.ones(sizes[0]))
        assert output.shape == (sizes[-1],)
        assert np.all(np.isfinite(output))

    def test_wrong_input_length_leaves_state_unchanged(self, simple_network):
        simple_network.propagate_forward([0.1, 0.2, 0.3])
        before = [layer.activations.copy() for layer in simple_network.layers]

        with pytest.raises(DimensionMismatchError) as exc_info:
            simple_network.propagate_forward([0.1, 0.2])

        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2
        for layer, activations in zip(simple_network.layers, before):
            assert np.array_equal(layer.activations, activations)

    def test_unconnected_chain_rejected(self):
        net = BPNet()
        net.add_layer(Layer(3, LayerKind.INPUT))
        net.add_layer(Layer(2, LayerKind.OUTPUT))
        with pytest.raises(ConfigurationError):
            net.propagate_forward([1, 2, 3])

    def test_activation_is_transfer_of_weighted_sum(self):
        net = BPNet.create_net([2, 1], seed=0)
        net.set_transfer_function('tanh')
        net.connections[0].weights[:] = [[0.5], [-0.25]]
        net.output_layer.biases[:] = [0.1]

        output = net.propagate_forward([1.0, 2.0])
        assert output[0] == pytest.approx(np.tanh(0.5 - 0.5 + 0.1))
        assert net.output_layer.neurons[0].activation == pytest.approx(output[0])


@pytest.mark.unit
class TestFunctionResolution:
    """Test name resolution of transfer and neighborhood functions."""

    @pytest.mark.parametrize('name', ['sigmoid', 'tanh', 'linear'])
    def test_known_transfer_functions(self, name):
        assert resolve_transfer_function(name).kind is TransferFunction(name)

    @pytest.mark.parametrize('name', ['Sigmoid', 'TANH', 'relu', '', 'sig'])
    def test_unknown_transfer_function_rejected(self, name):
        with pytest.raises(ConfigurationError):
            resolve_transfer_function(name)

    def test_network_keeps_transfer_function_on_error(self, simple_network):
        simple_network.set_transfer_function('tanh')
        with pytest.raises(ConfigurationError):
            simple_network.set_transfer_function('softmax')
        assert simple_network.transfer_function is TransferFunction.TANH

    def test_unknown_neighborhood_function_rejected(self):
        with pytest.raises(ConfigurationError):
            resolve_neighborhood_function('Gaussian')

    @pytest.mark.parametrize('kind', list(NeighborhoodFunction))
    def test_kernels_are_one_at_the_bmu(self, kind):
        kernel = resolve_neighborhood_function(kind.value)
        assert float(kernel(np.array([0.0]), 2.0)[0]) == pytest.approx(1.0)

    def test_kernel_shapes(self):
        distances = np.array([0.0, 1.0, 2.0, 3.0])
        sigma = 2.0

        assert bubble(distances, sigma).tolist() == [1.0, 1.0, 1.0, 0.0]
        assert np.allclose(gaussian(distances, sigma), np.exp(-distances ** 2 / 8.0))
        assert np.allclose(
            cut_gaussian(distances, sigma),
            [1.0, np.exp(-1 / 8.0), np.exp(-4 / 8.0), 0.0]
        )
        assert np.allclose(epanechnikov(distances, sigma), [1.0, 0.75, 0.0, 0.0])
        hat = mexican_hat(distances, sigma)
        assert hat[1] > 0.0
        assert hat[2] == pytest.approx(0.0)
        assert hat[3] < 0.0
