"""
test_persistence.py
~~~~~~~~~~~~~~~~~~~

Tests for exporting and importing networks.
"""

import io

import numpy as np
import pytest

from annet import (
    BPNet,
    CorruptStorageError,
    PersistenceError,
    SOMNet,
    export_network,
    import_network,
)

from conftest import weights_of


def _archive_members(net):
    buffer = io.BytesIO()
    net.export_to_storage(buffer)
    with np.load(io.BytesIO(buffer.getvalue()), allow_pickle=False) as archive:
        return {name: archive[name] for name in archive.files}


def _archive_bytes(members):
    buffer = io.BytesIO()
    np.savez(buffer, **members)
    return buffer.getvalue()


@pytest.mark.unit
class TestRoundTrip:
    """Test that an exported network imports back identically."""

    def test_bpnet_round_trip_through_file(self, simple_network, tmp_path):
        simple_network.set_transfer_function('tanh')
        simple_network.set_momentum(0.3)
        path = tmp_path / 'net.annet'

        simple_network.export_to_storage(str(path))
        loaded = import_network(str(path))

        assert isinstance(loaded, BPNet)
        assert loaded.layer_sizes == [3, 4, 2]
        assert [layer.kind for layer in loaded.layers] == \
            [layer.kind for layer in simple_network.layers]
        assert loaded.transfer_function == simple_network.transfer_function
        assert loaded.momentum == pytest.approx(0.3)
        for original, restored in zip(weights_of(simple_network), weights_of(loaded)):
            assert np.array_equal(original, restored)

    def test_bpnet_round_trip_through_stream(self, simple_network):
        buffer = io.BytesIO()
        export_network(simple_network, buffer)
        buffer.seek(0)

        loaded = import_network(buffer)
        vector = [0.2, -0.4, 0.9]
        assert np.array_equal(loaded.propagate_forward(vector),
                              simple_network.propagate_forward(vector))

    def test_som_round_trip(self, small_som, tmp_path):
        small_som.set_neighborhood_function('epanechnikov')
        small_som.set_conscience_rate(0.2)
        small_som.train_from_data(2, 0.0)
        path = tmp_path / 'map.annet'

        small_som.export_to_storage(str(path))
        loaded = SOMNet()
        loaded.import_from_storage(str(path))

        assert loaded.neighborhood_function == small_som.neighborhood_function
        assert loaded.conscience_rate == pytest.approx(0.2)
        assert np.array_equal(loaded.weights, small_som.weights)
        assert np.array_equal(loaded.positions(), small_som.positions())
        assert np.array_equal(loaded.conscience, small_som.conscience)
        assert loaded.find_bmu([0.1, 0.5, 0.9]).bmu_id == \
            small_som.find_bmu([0.1, 0.5, 0.9]).bmu_id

    def test_import_replaces_existing_network(self, simple_network, tmp_path):
        path = tmp_path / 'net.annet'
        simple_network.export_to_storage(str(path))

        target = BPNet.create_net([5, 5], seed=1)
        target.import_from_storage(str(path))

        assert target.layer_sizes == [3, 4, 2]
        assert all(layer.network is target for layer in target.layers)

    def test_training_set_embedded(self, reference_network, tmp_path):
        path = tmp_path / 'net.annet'
        reference_network.export_to_storage(str(path))

        loaded = import_network(str(path))
        training_set = loaded.get_training_set()
        original = reference_network.get_training_set()
        assert len(training_set) == len(original)
        assert np.array_equal(training_set.input_matrix(), original.input_matrix())
        assert np.array_equal(training_set.output_matrix(), original.output_matrix())

    def test_training_set_can_be_left_out(self, reference_network):
        buffer = io.BytesIO()
        reference_network.export_to_storage(buffer, include_training_set=False)
        buffer.seek(0)
        assert import_network(buffer).get_training_set() is None


@pytest.mark.unit
class TestImportFailures:
    """Test that failed imports leave the target network untouched."""

    def test_truncated_file(self, simple_network, tmp_path):
        path = tmp_path / 'net.annet'
        simple_network.export_to_storage(str(path))
        data = path.read_bytes()
        path.write_bytes(data[:len(data) // 2])

        target = BPNet.create_net([2, 2], seed=3)
        before = weights_of(target)

        with pytest.raises(CorruptStorageError):
            target.import_from_storage(str(path))

        assert target.layer_sizes == [2, 2]
        assert np.array_equal(weights_of(target)[0], before[0])

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'empty.annet'
        path.write_bytes(b'')
        with pytest.raises(CorruptStorageError):
            import_network(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(PersistenceError) as exc_info:
            import_network(str(tmp_path / 'missing.annet'))
        assert not isinstance(exc_info.value, CorruptStorageError)

    def test_unwritable_target(self, simple_network, tmp_path):
        with pytest.raises(PersistenceError):
            simple_network.export_to_storage(str(tmp_path / 'no' / 'such' / 'dir' / 'net.annet'))

    def test_edge_block_with_wrong_shape(self, simple_network):
        members = _archive_members(simple_network)
        members['edges_1'] = np.zeros((4, 3))

        with pytest.raises(CorruptStorageError):
            import_network(io.BytesIO(_archive_bytes(members)))

    def test_embedded_training_set_wider_than_input_layer(self, simple_network):
        members = _archive_members(simple_network)
        members['ts_inputs'] = np.zeros((2, 5))
        members['ts_outputs'] = np.zeros((2, 2))

        with pytest.raises(CorruptStorageError):
            import_network(io.BytesIO(_archive_bytes(members)))

    def test_embedded_outputs_disagree_with_output_layer(self, simple_network):
        members = _archive_members(simple_network)
        members['ts_inputs'] = np.zeros((2, 3))
        members['ts_outputs'] = np.zeros((2, 7))

        with pytest.raises(CorruptStorageError):
            import_network(io.BytesIO(_archive_bytes(members)))

    def test_missing_bias_block(self, simple_network):
        members = _archive_members(simple_network)
        del members['biases_2']

        with pytest.raises(CorruptStorageError):
            import_network(io.BytesIO(_archive_bytes(members)))

    def test_non_finite_weights(self, simple_network):
        members = _archive_members(simple_network)
        members['edges_0'] = members['edges_0'].copy()
        members['edges_0'][0, 0] = np.nan

        with pytest.raises(CorruptStorageError):
            import_network(io.BytesIO(_archive_bytes(members)))

    def test_layer_sizes_disagree_with_kinds(self, simple_network):
        members = _archive_members(simple_network)
        members['layer_sizes'] = np.array([3, 4], dtype=np.int64)

        with pytest.raises(CorruptStorageError):
            import_network(io.BytesIO(_archive_bytes(members)))

    def test_unknown_function_name(self, simple_network):
        members = _archive_members(simple_network)
        members['transfer_function'] = np.array('SIGMOID')

        with pytest.raises(CorruptStorageError):
            import_network(io.BytesIO(_archive_bytes(members)))

    def test_wrong_network_type(self, small_som, tmp_path):
        path = tmp_path / 'map.annet'
        small_som.export_to_storage(str(path))

        target = BPNet.create_net([3, 2], seed=0)
        with pytest.raises(CorruptStorageError):
            target.import_from_storage(str(path))
        assert target.layer_sizes == [3, 2]

    def test_not_an_archive(self):
        with pytest.raises(CorruptStorageError):
            import_network(io.BytesIO(b'PK\x03\x04 definitely not a zip'))
