"""
exceptions.py
~~~~~~~~~~~~~

Error types raised by the fingers package.
"""

from typing import Optional, Tuple


class FingersError(Exception):
    """Base class for all package errors."""


class ConfigurationError(FingersError, ValueError):
    """A training configuration or network definition is missing or malformed."""


class UnrecognizedActivationError(ConfigurationError):
    """A network definition names an unknown activation function."""

    def __init__(self, name: str):
        super().__init__(f"unrecognized activation function: {name}")
        self.name = name


class ShapeMismatchError(FingersError, ValueError):
    """An input vector does not match the width the network expects."""

    def __init__(
        self,
        expected: Tuple[int, ...],
        actual: Tuple[int, ...],
        what: str = "input"
    ):
        super().__init__(
            f"{what} shape mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class PersistenceError(FingersError):
    """Reading, writing or decoding a model snapshot failed."""


class DatasetError(FingersError):
    """A dataset file is missing or malformed."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message if path is None else f"{path}: {message}")
        self.path = path
