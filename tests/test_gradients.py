"""
test_gradients.py
~~~~~~~~~~~~~~~~~

Unit tests for the gradient accumulator.
"""

import os
import sys
from functools import reduce

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fingers.gradients import Gradients


def filled(layer_sizes, value, error=0.0, count=0):
    grads = Gradients.zeros(layer_sizes)
    for w in grads.weights[1:]:
        w[:] = value
    for b in grads.biases:
        b[:] = value
    grads.error = error
    grads.count = count
    return grads


@pytest.mark.unit
class TestGradients:
    """Test construction and reduction of gradients."""

    def test_zeros_shapes(self):
        grads = Gradients.zeros([3, 4, 2])

        assert grads.weights[0].shape == (0, 0)
        assert grads.weights[1].shape == (3, 4)
        assert grads.weights[2].shape == (4, 2)
        assert [b.shape for b in grads.biases] == [(3,), (4,), (2,)]
        assert grads.error == 0.0
        assert grads.count == 0

    def test_add_returns_new_value(self):
        a = filled([2, 3], 1.0, error=0.5, count=2)
        b = filled([2, 3], 2.0, error=0.25, count=3)

        total = a + b

        assert np.allclose(total.weights[1], 3.0)
        assert np.allclose(total.biases[1], 3.0)
        assert total.error == pytest.approx(0.75)
        assert total.count == 5
        assert np.allclose(a.weights[1], 1.0)

    def test_zeros_is_identity(self):
        a = filled([2, 3], 1.5, error=0.1, count=4)
        total = Gradients.zeros([2, 3]) + a

        assert np.array_equal(total.weights[1], a.weights[1])
        assert total.error == a.error
        assert total.count == a.count

    def test_inplace_add(self):
        a = filled([2, 3], 1.0, count=1)
        weights = a.weights[1]

        a += filled([2, 3], 1.0, count=1)

        assert a.weights[1] is weights
        assert np.allclose(weights, 2.0)
        assert a.count == 2

    def test_reduction_order_does_not_matter(self):
        parts = [filled([2, 2, 1], float(v), error=float(v), count=1) for v in (1, 2, 3, 4)]

        forward = reduce(lambda x, y: x + y, parts, Gradients.zeros([2, 2, 1]))
        backward = reduce(lambda x, y: x + y, reversed(parts), Gradients.zeros([2, 2, 1]))

        for w1, w2 in zip(forward.weights, backward.weights):
            assert np.allclose(w1, w2)
        assert forward.error == pytest.approx(backward.error)
        assert forward.count == backward.count == 4

    def test_add_other_type(self):
        with pytest.raises(TypeError):
            Gradients.zeros([2, 1]) + 1

    def test_repr(self):
        assert 'count=0' in repr(Gradients.zeros([2, 1]))
