"""
gradients.py
~~~~~~~~~~~~

Accumulator for per-example gradient contributions.

A ``Gradients`` value holds one weight-gradient matrix and one
bias-gradient vector per layer (index-aligned with the network's
``layer_sizes``), the summed squared output error, and the number of
examples that contributed. Addition is elementwise, so contributions
can be reduced in any order; ``Gradients.zeros`` is the identity.
"""

from typing import List, Sequence

import numpy as np


class Gradients:
    """Summed weight/bias gradients and squared error over a set of examples."""

    __slots__ = ('weights', 'biases', 'error', 'count')

    def __init__(
        self,
        weights: List[np.ndarray],
        biases: List[np.ndarray],
        error: float = 0.0,
        count: int = 0
    ):
        self.weights = weights
        self.biases = biases
        self.error = error
        self.count = count

    @classmethod
    def zeros(cls, layer_sizes: Sequence[int]) -> "Gradients":
        """
        Build the all-zero accumulator for a topology.

        Args:
            layer_sizes: Network layer widths, input first

        Returns:
            Gradients with a 0x0 placeholder at index 0 and zero arrays
            shaped like the network's weights and biases elsewhere
        """
        weights = [np.zeros((0, 0))]
        weights.extend(
            np.zeros((rows, cols))
            for rows, cols in zip(layer_sizes[:-1], layer_sizes[1:])
        )
        biases = [np.zeros(size) for size in layer_sizes]
        return cls(weights, biases)

    def __add__(self, other: "Gradients") -> "Gradients":
        if not isinstance(other, Gradients):
            return NotImplemented
        return Gradients(
            [w1 + w2 for w1, w2 in zip(self.weights, other.weights)],
            [b1 + b2 for b1, b2 in zip(self.biases, other.biases)],
            self.error + other.error,
            self.count + other.count
        )

    def __iadd__(self, other: "Gradients") -> "Gradients":
        if not isinstance(other, Gradients):
            return NotImplemented
        for w1, w2 in zip(self.weights, other.weights):
            w1 += w2
        for b1, b2 in zip(self.biases, other.biases):
            b1 += b2
        self.error += other.error
        self.count += other.count
        return self

    def __repr__(self) -> str:
        shapes = [w.shape for w in self.weights[1:]]
        return (
            f"Gradients(shapes={shapes}, error={self.error:.6g}, "
            f"count={self.count})"
        )
