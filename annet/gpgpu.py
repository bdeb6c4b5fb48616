"""
gpgpu.py
~~~~~~~~

Data-parallel execution of the SOM kernels.

The map's neurons are split into contiguous ranges, one per device. Each
device owns a ``SplittedNetExport`` holding copies of its slice of the
edge matrix, the neuron positions and the conscience vector. A training
iteration has two phases separated by a barrier:

1. every device searches its slice for a local BMU candidate;
2. the host merges the candidates into the global BMU and hands it to
   every device, which then updates its own slice only.

Slices are copied back into the host network when the pass ends.
All kernels are plain elementwise numpy transforms, so a device is just a
worker thread running them over its arrays.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

import numpy as np

from .errors import ANNetError, DeviceError

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Elementwise kernels
# ----------------------------------------------------------------------

def saxpy(a: float, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """y <- a * x + y"""
    return a * x + y


def sax(a: float, x: np.ndarray) -> np.ndarray:
    """y <- a * x"""
    return a * x


def saxmy(a: float, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """y <- a * (x - y)"""
    return a * (x - y)


def sxmamy(a: float, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """y <- x - (a - y)"""
    return x - (a - y)


def spow_amxpy(a: float, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """y <- (a - x)^2 + y"""
    return (a - x) ** 2 + y


def hebbian(weights: np.ndarray, influence: np.ndarray,
            learning_rate: float, value: float) -> np.ndarray:
    """w <- w + influence * learning_rate * (value - w)"""
    return weights + influence * learning_rate * (value - weights)


def apply_neighborhood(kernel: Callable, squared_distance: np.ndarray,
                       sigma: float) -> np.ndarray:
    """Evaluate a neighborhood kernel on squared grid distances."""
    return kernel(np.sqrt(squared_distance), sigma)


def squared_distances(vector: np.ndarray, columns: np.ndarray) -> np.ndarray:
    """
    Squared Euclidean distance from ``vector`` to every column of ``columns``.

    Accumulated one component at a time with ``spow_amxpy`` so each step
    is a pure elementwise pass over the neurons.
    """
    distance = np.zeros(columns.shape[1])
    for component, row in zip(vector, columns):
        distance = spow_amxpy(component, row, distance)
    return distance


# ----------------------------------------------------------------------
# Partitioning
# ----------------------------------------------------------------------

def partition_ranges(num_neurons: int, num_devices: int) -> List[range]:
    """
    Split neuron ids ``0 .. num_neurons - 1`` into contiguous ranges.

    The first ``num_neurons % num_devices`` devices receive one neuron
    more than the others.

    Raises:
        DeviceError: If there are fewer neurons than devices or no devices
    """
    if num_devices < 1:
        raise DeviceError(f"Need at least one device, got {num_devices}")
    if num_devices > num_neurons:
        raise DeviceError(
            f"Cannot split {num_neurons} neurons across {num_devices} devices",
            details={'neurons': num_neurons, 'devices': num_devices}
        )
    base, extra = divmod(num_neurons, num_devices)
    ranges = []
    start = 0
    for device in range(num_devices):
        stop = start + base + (1 if device < extra else 0)
        ranges.append(range(start, stop))
        start = stop
    return ranges


class BMUExport:
    """Best matching unit found on one device (or merged on the host)."""

    __slots__ = ('bmu_id', 'device_id', 'position', 'distance', 'score')

    def __init__(self, bmu_id: int, device_id: int, position: np.ndarray,
                 distance: float, score: float):
        self.bmu_id = bmu_id
        self.device_id = device_id
        self.position = position
        # Squared Euclidean distance of the input to the neuron
        self.distance = distance
        # Value actually compared: distance minus conscience bias
        self.score = score

    def sort_key(self):
        return (self.score, self.bmu_id)

    def __repr__(self) -> str:
        return (
            f"BMUExport(id={self.bmu_id}, device={self.device_id}, "
            f"distance={self.distance:.6f})"
        )


def local_bmu(edges: np.ndarray, positions: np.ndarray, bias: np.ndarray,
              vector: np.ndarray, offset: int = 0, device_id: int = 0) -> BMUExport:
    """Find the minimal biased distance among the columns of ``edges``.

    ``np.argmin`` returns the first minimum, so ties go to the lowest id.
    """
    distance = squared_distances(vector, edges)
    score = distance - bias
    local = int(np.argmin(score))
    return BMUExport(
        bmu_id=offset + local,
        device_id=device_id,
        position=positions[local].copy(),
        distance=float(distance[local]),
        score=float(score[local])
    )


def merge_bmus(candidates: Sequence[BMUExport]) -> BMUExport:
    """Pick the global BMU: minimal score, lowest id on ties."""
    if not candidates:
        raise DeviceError("No BMU candidates to merge")
    return min(candidates, key=BMUExport.sort_key)


class SplittedNetExport:
    """
    One device's slice of a SOM.

    Args:
        device_id: Index of the owning device
        neuron_range: Global ids of the neurons in this slice
        edges: Slice of the edge matrix, shape (input size, slice size)
        positions: Slice of the position matrix, shape (slice size, dims)
        conscience: Win frequencies of the slice's neurons
    """

    def __init__(self, device_id: int, neuron_range: range, edges: np.ndarray,
                 positions: np.ndarray, conscience: np.ndarray):
        self.device_id = device_id
        self.neuron_range = neuron_range
        self.edges = np.array(edges, dtype=float)
        self.positions = np.array(positions, dtype=float)
        self.conscience = np.array(conscience, dtype=float)
        self.input: Optional[np.ndarray] = None

    @property
    def offset(self) -> int:
        return self.neuron_range.start

    def set_input(self, vector: np.ndarray) -> None:
        self.input = np.array(vector, dtype=float)

    def set_conscience(self, conscience: np.ndarray) -> None:
        self.conscience = np.array(conscience, dtype=float)

    def conscience_bias(self, num_neurons: int, rate: float) -> np.ndarray:
        if rate == 0.0:
            return np.zeros_like(self.conscience)
        return sax(rate, 1.0 / num_neurons - self.conscience)

    def find_local_bmu(self, num_neurons: int, conscience_rate: float) -> BMUExport:
        if self.input is None:
            raise DeviceError(f"Device {self.device_id} has no input")
        return local_bmu(
            self.edges,
            self.positions,
            self.conscience_bias(num_neurons, conscience_rate),
            self.input,
            offset=self.offset,
            device_id=self.device_id
        )

    def apply_update(self, bmu: BMUExport, learning_rate: float, sigma: float,
                     kernel: Callable, conscience_step: float) -> None:
        """Neighborhood-weighted update of this slice towards the input."""
        grid = squared_distances(bmu.position, self.positions.T)
        influence = apply_neighborhood(kernel, grid, sigma)
        for row, component in enumerate(self.input):
            self.edges[row] = hebbian(self.edges[row], influence, learning_rate, component)

        if conscience_step > 0.0:
            won = np.zeros_like(self.conscience)
            if bmu.bmu_id in self.neuron_range:
                won[bmu.bmu_id - self.offset] = 1.0
            self.conscience = saxpy(conscience_step, won - self.conscience,
                                    self.conscience)

    def release(self) -> None:
        self.edges = None
        self.positions = None
        self.conscience = None
        self.input = None


def split_network(edges: np.ndarray, positions: np.ndarray,
                  conscience: np.ndarray, num_devices: int) -> List[SplittedNetExport]:
    """Cut the map state into one export per device."""
    ranges = partition_ranges(edges.shape[1], num_devices)
    return [
        SplittedNetExport(
            device_id,
            neuron_range,
            edges[:, neuron_range.start:neuron_range.stop],
            positions[neuron_range.start:neuron_range.stop],
            conscience[neuron_range.start:neuron_range.stop]
        )
        for device_id, neuron_range in enumerate(ranges)
    ]


def merge_exports(exports: Sequence[SplittedNetExport], edges: np.ndarray,
                  conscience: np.ndarray) -> None:
    """Copy every device slice back into the host arrays."""
    for export in exports:
        start, stop = export.offset, export.neuron_range.stop
        edges[:, start:stop] = export.edges
        conscience[start:stop] = export.conscience


class DevicePool:
    """
    Runs one worker per device.

    ``run`` submits a call for every export and blocks until all of them
    have finished, which is the synchronization barrier between phases.
    A single device runs inline.
    """

    def __init__(self, num_devices: int):
        if num_devices < 1:
            raise DeviceError(f"Need at least one device, got {num_devices}")
        self.num_devices = num_devices
        self._executor: Optional[ThreadPoolExecutor] = None

    def __enter__(self) -> 'DevicePool':
        if self.num_devices > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.num_devices,
                thread_name_prefix='annet-device'
            )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def run(self, func: Callable, exports: Sequence[SplittedNetExport]) -> list:
        if self._executor is None:
            return [func(export) for export in exports]

        futures = [self._executor.submit(func, export) for export in exports]
        results = []
        failure: Optional[BaseException] = None
        for export, future in zip(exports, futures):
            try:
                results.append(future.result())
            except ANNetError as e:
                failure = failure or e
            except Exception as e:
                failure = failure or DeviceError(
                    f"Device {export.device_id} failed: {e}",
                    details={'device': export.device_id}
                )
        if failure is not None:
            raise failure
        return results
