"""
errors.py
~~~~~~~~~

Exception hierarchy for the ANNet engine.

Every error carries a ``kind`` string so callers (the training service,
a designer front end) can tell a bad configuration from a corrupt file
without matching on exception messages.
"""

from typing import Any, Dict, Optional


class ANNetError(Exception):
    """Base exception for all engine errors."""

    kind = 'annet_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serializable description of the error."""
        return {
            'error': self.message,
            'kind': self.kind,
            'details': self.details
        }


class ConfigurationError(ANNetError, ValueError):
    """Unknown function name, zero-size layer or invalid layer ordering."""

    kind = 'configuration_error'


class MissingTrainingDataError(ConfigurationError):
    """Training was requested without an attached training set."""

    kind = 'missing_training_data'


class DimensionMismatchError(ANNetError, ValueError):
    """A vector length disagrees with the layer it is applied to."""

    kind = 'dimension_mismatch'

    def __init__(self, message: str, expected: Optional[int] = None,
                 actual: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual
        self.details.setdefault('expected', expected)
        self.details.setdefault('actual', actual)


class PersistenceError(ANNetError, IOError):
    """Reading or writing a stored network failed."""

    kind = 'io_error'


class CorruptStorageError(PersistenceError):
    """Stored data is truncated or structurally inconsistent."""

    kind = 'corrupt_storage'


class DeviceError(ANNetError, RuntimeError):
    """Partitioning onto execution devices failed."""

    kind = 'device_error'


class NumericInstabilityError(ANNetError, ArithmeticError):
    """A weight became NaN or infinite during an update."""

    kind = 'numeric_instability'

    def __init__(self, message: str, epoch: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.epoch = epoch
        self.details.setdefault('epoch', epoch)
