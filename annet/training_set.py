"""
training_set.py
~~~~~~~~~~~~~~~

Ordered (input, expected output) pairs.
"""

import logging
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError, DimensionMismatchError

logger = logging.getLogger(__name__)


def _as_vector(values) -> np.ndarray:
    vector = np.asarray(values, dtype=float).reshape(-1)
    if not np.all(np.isfinite(vector)):
        raise ConfigurationError(
            "Training vectors must only contain finite values",
            details={'non_finite_indices': np.flatnonzero(~np.isfinite(vector)).tolist()}
        )
    return vector


class TrainingSet:
    """
    Ordered collection of training vectors.

    Inputs and outputs can be added together with ``add_pair`` or
    separately with ``add_input`` / ``add_output``; the n-th input pairs
    with the n-th output. A SOM only uses the inputs. All inputs share one
    length and all outputs share one length; which lengths are valid is
    decided by the network the set is attached to.
    """

    def __init__(self, pairs: Optional[Sequence[Tuple[Sequence[float], Sequence[float]]]] = None):
        self._inputs: List[np.ndarray] = []
        self._outputs: List[np.ndarray] = []
        for inputs, outputs in pairs or []:
            self.add_pair(inputs, outputs)

    @classmethod
    def from_arrays(cls, inputs, outputs=None) -> 'TrainingSet':
        """Build a set from 2-D arrays (one row per sample)."""
        training_set = cls()
        for row in np.atleast_2d(np.asarray(inputs, dtype=float)):
            training_set.add_input(row)
        if outputs is not None:
            for row in np.atleast_2d(np.asarray(outputs, dtype=float)):
                training_set.add_output(row)
        return training_set

    @staticmethod
    def _check_length(vector: np.ndarray, existing: List[np.ndarray], what: str) -> None:
        if existing and len(vector) != len(existing[0]):
            raise DimensionMismatchError(
                f"{what} vector has length {len(vector)}, "
                f"previous {what} vectors have length {len(existing[0])}",
                expected=len(existing[0]),
                actual=len(vector)
            )

    def add_input(self, values) -> None:
        vector = _as_vector(values)
        self._check_length(vector, self._inputs, 'input')
        self._inputs.append(vector)

    def add_output(self, values) -> None:
        vector = _as_vector(values)
        self._check_length(vector, self._outputs, 'output')
        self._outputs.append(vector)

    def add_pair(self, inputs, outputs) -> None:
        input_vector = _as_vector(inputs)
        output_vector = _as_vector(outputs)
        self._check_length(input_vector, self._inputs, 'input')
        self._check_length(output_vector, self._outputs, 'output')
        self._inputs.append(input_vector)
        self._outputs.append(output_vector)

    def clear(self) -> None:
        self._inputs.clear()
        self._outputs.clear()

    @property
    def inputs(self) -> List[np.ndarray]:
        return list(self._inputs)

    @property
    def outputs(self) -> List[np.ndarray]:
        return list(self._outputs)

    @property
    def input_size(self) -> Optional[int]:
        return len(self._inputs[0]) if self._inputs else None

    @property
    def output_size(self) -> Optional[int]:
        return len(self._outputs[0]) if self._outputs else None

    def get_input(self, index: int) -> np.ndarray:
        return self._inputs[index]

    def get_output(self, index: int) -> np.ndarray:
        return self._outputs[index]

    def pairs(self) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
        """Iterate over complete (input, output) pairs in insertion order."""
        return zip(self._inputs, self._outputs)

    def input_matrix(self) -> np.ndarray:
        if not self._inputs:
            return np.zeros((0, 0))
        return np.vstack(self._inputs)

    def output_matrix(self) -> np.ndarray:
        if not self._outputs:
            return np.zeros((0, 0))
        return np.vstack(self._outputs)

    def __len__(self) -> int:
        return len(self._inputs)

    def __repr__(self) -> str:
        return (
            f"TrainingSet(inputs={len(self._inputs)}, "
            f"outputs={len(self._outputs)})"
        )
