"""
activation.py
~~~~~~~~~~~~~

Scalar activation functions applied elementwise to numpy arrays.

Every function takes the pre-activation value ``x`` and a per-layer
coefficient ``coeff`` that scales the argument.
"""

from enum import Enum
from typing import Union

import numpy as np

from fingers.exceptions import UnrecognizedActivationError

ArrayLike = Union[float, np.ndarray]


class ActivationFunction(Enum):
    """Supported activation function families."""

    SIGMOID = "sigmoid"
    TANH = "tanh"
    IDENTITY = "id"

    @classmethod
    def from_name(cls, name: str) -> "ActivationFunction":
        """
        Look up an activation function by its definition name.

        Args:
            name: One of ``sigmoid``, ``tanh``, ``id`` (``identity`` is
                accepted as an alias)

        Raises:
            UnrecognizedActivationError: If the name is unknown
        """
        if name == "identity":
            return cls.IDENTITY
        try:
            return cls(name)
        except ValueError:
            raise UnrecognizedActivationError(name) from None

    def function(self, x: ArrayLike, coeff: float) -> ArrayLike:
        if self is ActivationFunction.SIGMOID:
            return 1.0 / (1.0 + np.exp(-x * coeff))
        if self is ActivationFunction.TANH:
            return np.tanh(x * coeff)
        return x * coeff

    def derivative(self, x: ArrayLike, coeff: float) -> ArrayLike:
        """
        Derivative used by backpropagation, evaluated on pre-activation sums.

        The tanh branch is ``coeff / cosh(coeff * x)``, not
        ``coeff * (1 - tanh^2)``; saved models were trained with it.
        """
        if self is ActivationFunction.SIGMOID:
            fx = self.function(x, coeff)
            return coeff * fx * (1.0 - fx)
        if self is ActivationFunction.TANH:
            return coeff / np.cosh(x * coeff)
        if np.ndim(x) == 0:
            return coeff
        return np.full(np.shape(x), coeff)
