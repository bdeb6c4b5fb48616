"""
test_gpgpu.py
~~~~~~~~~~~~~

Tests for partitioning, BMU merging and multi-device SOM training.
"""

import numpy as np
import pytest

from annet import DeviceError, SOMNet, TrainingSet
from annet.errors import ConfigurationError
from annet.functions import gaussian
from annet.gpgpu import (
    BMUExport,
    DevicePool,
    SplittedNetExport,
    hebbian,
    local_bmu,
    merge_bmus,
    merge_exports,
    partition_ranges,
    saxmy,
    saxpy,
    spow_amxpy,
    split_network,
    squared_distances,
    sxmamy,
)


@pytest.mark.unit
class TestKernels:
    """Test the elementwise kernels."""

    def test_saxpy_family(self):
        x = np.array([1.0, 2.0, 3.0])
        y = np.array([0.5, 0.5, 0.5])

        assert saxpy(2.0, x, y).tolist() == [2.5, 4.5, 6.5]
        assert saxmy(2.0, x, y).tolist() == [1.0, 3.0, 5.0]
        assert sxmamy(1.0, x, y).tolist() == [0.5, 1.5, 2.5]
        assert spow_amxpy(1.0, x, y).tolist() == [0.5, 1.5, 4.5]

    def test_hebbian_moves_towards_value(self):
        weights = np.array([0.0, 1.0, 0.5])
        influence = np.array([1.0, 0.5, 0.0])
        updated = hebbian(weights, influence, 0.5, 1.0)
        assert updated.tolist() == [0.5, 1.0, 0.5]

    def test_squared_distances(self):
        columns = np.array([[0.0, 3.0], [0.0, 4.0]])
        assert squared_distances(np.array([0.0, 0.0]), columns).tolist() == [0.0, 25.0]


@pytest.mark.unit
class TestPartitioning:
    """Test splitting neuron ids across devices."""

    @pytest.mark.parametrize('num_neurons', [1, 2, 7, 16, 33, 100])
    @pytest.mark.parametrize('num_devices', [1, 2, 3, 4, 7])
    def test_ranges_cover_all_neurons_once(self, num_neurons, num_devices):
        if num_devices > num_neurons:
            pytest.skip("more devices than neurons")
        ranges = partition_ranges(num_neurons, num_devices)

        assert len(ranges) == num_devices
        ids = [i for r in ranges for i in r]
        assert ids == list(range(num_neurons))
        sizes = [len(r) for r in ranges]
        assert max(sizes) - min(sizes) <= 1
        assert sizes == sorted(sizes, reverse=True)

    def test_remainder_goes_to_first_devices(self):
        ranges = partition_ranges(10, 3)
        assert [(r.start, r.stop) for r in ranges] == [(0, 4), (4, 7), (7, 10)]

    def test_more_devices_than_neurons(self):
        with pytest.raises(DeviceError):
            partition_ranges(3, 4)

    def test_no_devices(self):
        with pytest.raises(DeviceError):
            partition_ranges(3, 0)

    def test_split_then_merge_is_identity(self):
        rng = np.random.default_rng(0)
        edges = rng.random((3, 10))
        positions = rng.random((10, 2))
        conscience = np.full(10, 0.1)

        exports = split_network(edges, positions, conscience, 3)
        assert [export.edges.shape for export in exports] == [(3, 4), (3, 3), (3, 3)]

        target_edges = np.zeros_like(edges)
        target_conscience = np.zeros_like(conscience)
        merge_exports(exports, target_edges, target_conscience)
        assert np.array_equal(target_edges, edges)
        assert np.array_equal(target_conscience, conscience)

    def test_exports_do_not_alias_host_arrays(self):
        edges = np.zeros((2, 4))
        exports = split_network(edges, np.zeros((4, 1)), np.full(4, 0.25), 2)
        exports[0].edges[:] = 1.0
        assert np.all(edges == 0.0)


@pytest.mark.unit
class TestBMUMerge:
    """Test merging per-device BMU candidates."""

    def test_smallest_score_wins(self):
        candidates = [
            BMUExport(2, 0, np.zeros(2), 0.4, 0.4),
            BMUExport(7, 1, np.zeros(2), 0.1, 0.1),
            BMUExport(9, 2, np.zeros(2), 0.3, 0.3),
        ]
        assert merge_bmus(candidates).bmu_id == 7

    def test_tie_goes_to_lowest_id_in_any_order(self):
        candidates = [
            BMUExport(12, 2, np.zeros(2), 0.2, 0.2),
            BMUExport(5, 1, np.zeros(2), 0.2, 0.2),
            BMUExport(8, 1, np.zeros(2), 0.2, 0.2),
        ]
        assert merge_bmus(candidates).bmu_id == 5
        assert merge_bmus(list(reversed(candidates))).bmu_id == 5

    def test_no_candidates(self):
        with pytest.raises(DeviceError):
            merge_bmus([])

    def test_local_bmu_reports_global_id(self):
        edges = np.array([[0.9, 0.1, 0.5]])
        positions = np.array([[6.0], [7.0], [8.0]])
        bmu = local_bmu(edges, positions, np.zeros(3), np.array([0.0]),
                        offset=6, device_id=2)
        assert bmu.bmu_id == 7
        assert bmu.device_id == 2
        assert bmu.position.tolist() == [7.0]
        assert bmu.distance == pytest.approx(0.01)

    def test_export_without_input(self):
        export = SplittedNetExport(0, range(0, 2), np.zeros((2, 2)),
                                   np.zeros((2, 1)), np.full(2, 0.5))
        with pytest.raises(DeviceError):
            export.find_local_bmu(2, 0.0)

    def test_update_only_touches_own_slice(self):
        export = SplittedNetExport(1, range(2, 4), np.zeros((1, 2)),
                                   np.array([[2.0], [3.0]]), np.full(2, 0.25))
        export.set_input(np.array([1.0]))
        bmu = BMUExport(0, 0, np.array([0.0]), 1.0, 1.0)

        export.apply_update(bmu, 1.0, 1.0, gaussian, 0.5)

        assert export.edges[0] == pytest.approx([np.exp(-2.0), np.exp(-4.5)])
        # Neither neuron won, so both frequencies decay
        assert export.conscience.tolist() == [0.125, 0.125]


@pytest.mark.unit
class TestDevicePool:
    """Test the per-device worker pool."""

    def test_results_in_device_order(self):
        exports = split_network(np.zeros((1, 6)), np.zeros((6, 1)), np.zeros(6), 3)
        with DevicePool(3) as pool:
            results = pool.run(lambda export: export.device_id, exports)
        assert results == [0, 1, 2]

    def test_worker_failure_is_device_error(self):
        exports = split_network(np.zeros((1, 4)), np.zeros((4, 1)), np.zeros(4), 2)

        def fail_on_second(export):
            if export.device_id == 1:
                raise RuntimeError("out of memory")
            return export.device_id

        with DevicePool(2) as pool:
            with pytest.raises(DeviceError) as exc_info:
                pool.run(fail_on_second, exports)
        assert exc_info.value.details['device'] == 1

    def test_engine_errors_pass_through(self):
        exports = split_network(np.zeros((1, 4)), np.zeros((4, 1)), np.zeros(4), 2)

        def fail(export):
            raise ConfigurationError("bad kernel")

        with DevicePool(2) as pool:
            with pytest.raises(ConfigurationError):
                pool.run(fail, exports)

    def test_zero_devices(self):
        with pytest.raises(DeviceError):
            DevicePool(0)


@pytest.mark.integration
class TestMultiDeviceTraining:
    """Test that splitting the map across devices does not change training."""

    def _train(self, num_devices, conscience_rate, kernel):
        rng = np.random.default_rng(8)
        som = SOMNet.create_som(3, 5, 4, seed=13)
        som.set_neighborhood_function(kernel)
        som.set_conscience_rate(conscience_rate)
        som.set_num_devices(num_devices)
        som.set_training_set(TrainingSet.from_arrays(rng.random((40, 3))))
        errors = som.train_from_data(5, 0.0)
        return som, errors

    @pytest.mark.parametrize('num_devices', [2, 3, 7])
    @pytest.mark.parametrize('conscience_rate,kernel', [
        (0.0, 'gaussian'),
        (0.3, 'bubble'),
        (0.1, 'mexican_hat'),
    ])
    def test_same_result_as_single_device(self, num_devices, conscience_rate, kernel):
        single, single_errors = self._train(1, conscience_rate, kernel)
        multi, multi_errors = self._train(num_devices, conscience_rate, kernel)

        assert np.allclose(single.weights, multi.weights)
        assert np.allclose(single.conscience, multi.conscience)
        assert np.allclose(single_errors, multi_errors)

    def test_map_merged_back_after_training(self):
        som, _ = self._train(4, 0.0, 'gaussian')
        assert som.weights.shape == (3, 20)
        assert np.all(np.isfinite(som.weights))
