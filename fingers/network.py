"""
network.py
~~~~~~~~~~

Fully-connected feedforward network.

Parameters are stored index-aligned with ``layer_sizes``: ``weights[i]``
has shape ``(layer_sizes[i-1], layer_sizes[i])`` and feeds layer ``i``,
``biases[i]`` has length ``layer_sizes[i]``. Index 0 holds a 0x0 weight
placeholder and an unused coefficient so loops can run over layer
indices directly.

Forward and backward passes accept either a single example (1-D array)
or a stack of examples (2-D array, one row per example). A stacked pass
produces the same summed gradients as running the examples one at a
time.
"""

import logging
import numbers
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from fingers.activation import ActivationFunction
from fingers.exceptions import ConfigurationError, ShapeMismatchError
from fingers.gradients import Gradients

logger = logging.getLogger(__name__)

INIT_STD_DEV = 0.1


@dataclass
class NetworkDefinition:
    """
    Topology of a network before any parameters exist.

    ``activation_coeffs`` may list one coefficient per layer (index 0
    unused) or one per non-input layer, in which case a 0.0 is prepended.
    """

    layers: List[int]
    activation_coeffs: List[float]
    activation_fn: str = 'sigmoid'
    _coeffs: List[float] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.layers, (list, tuple, np.ndarray)) or len(self.layers) < 2:
            raise ConfigurationError(
                f"network needs at least 2 layers, got {self.layers!r}"
            )
        for size in self.layers:
            if isinstance(size, bool) or not isinstance(size, numbers.Integral) or size < 1:
                raise ConfigurationError(
                    f"layer sizes must be positive integers, got {self.layers!r}"
                )
        self.layers = [int(size) for size in self.layers]

        try:
            coeffs = [float(c) for c in self.activation_coeffs]
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"activation coefficients must be numbers: {e}"
            ) from e
        if len(coeffs) == len(self.layers) - 1:
            coeffs.insert(0, 0.0)
        elif len(coeffs) != len(self.layers):
            raise ConfigurationError(
                f"expected {len(self.layers)} activation coefficients, "
                f"got {len(coeffs)}"
            )
        self._coeffs = coeffs

    @property
    def layer_coefficients(self) -> List[float]:
        """Coefficients aligned with ``layers`` (index 0 unused)."""
        return list(self._coeffs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkDefinition":
        """
        Build a definition from a decoded JSON object.

        Raises:
            ConfigurationError: If a required key is missing
        """
        missing = [k for k in ('layers', 'activation_coeffs') if k not in data]
        if missing:
            raise ConfigurationError(
                f"network definition missing keys: {', '.join(missing)}"
            )
        return cls(
            layers=data['layers'],
            activation_coeffs=data['activation_coeffs'],
            activation_fn=data.get('activation_fn', 'sigmoid')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'layers': list(self.layers),
            'activation_coeffs': self.layer_coefficients,
            'activation_fn': self.activation_fn,
        }


class Network:
    """
    Feedforward network with one activation function family.

    Use :meth:`from_definition` to build a zero-initialised network and
    :meth:`assign_random_weights` before training.
    """

    def __init__(
        self,
        layer_sizes: Sequence[int],
        activation_coeffs: Sequence[float],
        weights: List[np.ndarray],
        biases: List[np.ndarray],
        activation_fn: ActivationFunction
    ):
        self.layer_sizes = list(layer_sizes)
        self.activation_coeffs = [float(c) for c in activation_coeffs]
        self.weights = weights
        self.biases = biases
        self.activation_fn = activation_fn
        self._check_parameters()

    def _check_parameters(self) -> None:
        sizes = self.layer_sizes
        if len(self.activation_coeffs) != len(sizes):
            raise ValueError(
                f"{len(self.activation_coeffs)} coefficients for "
                f"{len(sizes)} layers"
            )
        if len(self.weights) != len(sizes) or len(self.biases) != len(sizes):
            raise ValueError("parameter lists must have one entry per layer")
        if self.weights[0].shape != (0, 0):
            raise ValueError("weights[0] must be an empty placeholder")
        for it in range(len(sizes)):
            if it > 0 and self.weights[it].shape != (sizes[it - 1], sizes[it]):
                raise ValueError(
                    f"weights[{it}] has shape {self.weights[it].shape}, "
                    f"expected {(sizes[it - 1], sizes[it])}"
                )
            if self.biases[it].shape != (sizes[it],):
                raise ValueError(
                    f"biases[{it}] has shape {self.biases[it].shape}, "
                    f"expected {(sizes[it],)}"
                )

    @classmethod
    def from_definition(cls, defn: NetworkDefinition) -> "Network":
        """
        Create a network with zero-valued weights and biases.

        Args:
            defn: Layer sizes, coefficients and activation name

        Returns:
            Network: Parameters shaped by ``defn.layers``

        Raises:
            UnrecognizedActivationError: If the activation name is unknown
        """
        activation_fn = ActivationFunction.from_name(defn.activation_fn)
        zeros = Gradients.zeros(defn.layers)
        net = cls(
            defn.layers,
            defn.layer_coefficients,
            zeros.weights,
            zeros.biases,
            activation_fn
        )
        logger.debug(
            f"Created network {net.layer_sizes} with "
            f"{activation_fn.value} activation"
        )
        return net

    @property
    def num_layers(self) -> int:
        return len(self.layer_sizes)

    def assign_random_weights(self, rng: np.random.Generator) -> None:
        """
        Draw every weight and bias from N(0, 0.1).

        Weights are filled first, layer by layer, then biases, so a fixed
        seed gives a fixed network.

        Args:
            rng: Random source owned by the caller
        """
        for matrix in self.weights:
            matrix[...] = rng.normal(0.0, INIT_STD_DEV, size=matrix.shape)
        for bias in self.biases:
            bias[...] = rng.normal(0.0, INIT_STD_DEV, size=bias.shape)

    def zero_gradients(self) -> Gradients:
        return Gradients.zeros(self.layer_sizes)

    def copy(self) -> "Network":
        return Network(
            self.layer_sizes,
            self.activation_coeffs,
            [w.copy() for w in self.weights],
            [b.copy() for b in self.biases],
            self.activation_fn
        )

    def restore(self, snapshot: "Network") -> None:
        """Overwrite parameters in place with those of ``snapshot``."""
        if snapshot.layer_sizes != self.layer_sizes:
            raise ValueError(
                f"cannot restore {snapshot.layer_sizes} into {self.layer_sizes}"
            )
        for w, saved in zip(self.weights, snapshot.weights):
            w[...] = saved
        for b, saved in zip(self.biases, snapshot.biases):
            b[...] = saved

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    def _as_input(self, example: Any) -> np.ndarray:
        x = np.asarray(example, dtype=float)
        if x.ndim not in (1, 2) or x.shape[-1] != self.layer_sizes[0]:
            raise ShapeMismatchError((self.layer_sizes[0],), x.shape)
        return x

    def feed_forward(
        self,
        example: Any,
        stop_at: Optional[int] = None
    ) -> Tuple[List[np.ndarray], List[np.ndarray]]:
        """
        Propagate an input through the network.

        Args:
            example: Input vector, or a 2-D array of input rows
            stop_at: Last layer index to compute (defaults to the output layer)

        Returns:
            (layers, layer_inputs): activations per layer and the
            pre-activation sums that produced them; entries past
            ``stop_at`` are left at zero

        Raises:
            ShapeMismatchError: If the input width is wrong
        """
        x = self._as_input(example)
        last = self.num_layers - 1 if stop_at is None else stop_at
        batch_shape = x.shape[:-1]

        layers = [x]
        layer_inputs = [np.zeros_like(x)]
        for it in range(1, self.num_layers):
            if it > last:
                empty = np.zeros(batch_shape + (self.layer_sizes[it],))
                layers.append(empty)
                layer_inputs.append(empty.copy())
                continue
            net = layers[it - 1] @ self.weights[it] + self.biases[it]
            layer_inputs.append(net)
            layers.append(
                self.activation_fn.function(net, self.activation_coeffs[it])
            )
        return layers, layer_inputs

    def eval(self, example: Any) -> np.ndarray:
        """Return the output layer activations for ``example``."""
        layers, _ = self.feed_forward(example)
        return layers[-1]

    def eval_to_layer(self, example: Any, layer: int) -> np.ndarray:
        """
        Return the activations of layer ``layer`` (0 = the input itself).

        Used to inspect hidden-layer features.
        """
        if not 0 <= layer < self.num_layers:
            raise ValueError(
                f"layer index {layer} out of range for {self.num_layers} layers"
            )
        layers, _ = self.feed_forward(example, stop_at=layer)
        return layers[layer]

    # ------------------------------------------------------------------
    # Backward pass
    # ------------------------------------------------------------------

    def backpropagate(
        self,
        layer_inputs: List[np.ndarray],
        out_layer_diff: np.ndarray
    ) -> List[np.ndarray]:
        """
        Compute the error signal of every layer.

        Args:
            layer_inputs: Pre-activation sums from :meth:`feed_forward`
            out_layer_diff: ``predicted - target`` for the output layer

        Returns:
            Error signals index-aligned with ``layer_sizes``; index 0 is zero
        """
        derivatives = [np.zeros_like(layer_inputs[0])]
        derivatives.extend(
            self.activation_fn.derivative(net, coeff)
            for net, coeff in zip(layer_inputs[1:], self.activation_coeffs[1:])
        )

        delta = [np.zeros_like(d) for d in derivatives]
        delta[-1] = out_layer_diff * derivatives[-1]
        for it in range(self.num_layers - 2, 0, -1):
            # row-vector form of weights[it + 1] . delta[it + 1]
            delta[it] = (delta[it + 1] @ self.weights[it + 1].T) * derivatives[it]
        return delta

    def compute_weight_update(
        self,
        layers: List[np.ndarray],
        delta: List[np.ndarray]
    ) -> Tuple[List[np.ndarray], List[np.ndarray]]:
        """
        Turn error signals into weight and bias gradients.

        The weight gradient of layer ``i`` is the outer product of
        ``layers[i-1]`` and ``delta[i]``, summed over stacked examples;
        the bias gradient is ``delta[i]``.
        """
        weights = [np.zeros((0, 0))]
        biases = [np.zeros(self.layer_sizes[0])]
        for it in range(1, self.num_layers):
            activations = np.atleast_2d(layers[it - 1])
            signal = np.atleast_2d(delta[it])
            weights.append(activations.T @ signal)
            biases.append(signal.sum(axis=0))
        return weights, biases

    def example_gradients(self, inputs: Any, targets: Any) -> Gradients:
        """
        Forward pass, output error and backpropagation for some examples.

        Args:
            inputs: One input vector or a 2-D stack of them
            targets: Matching target vector(s)

        Returns:
            Gradients summed over the examples, with the summed per-example
            mean squared output error
        """
        layers, layer_inputs = self.feed_forward(inputs)
        target = np.asarray(targets, dtype=float)
        if target.shape != layers[-1].shape:
            raise ShapeMismatchError(layers[-1].shape, target.shape, 'target')

        out_layer_diff = layers[-1] - target
        error = float(np.sum(out_layer_diff ** 2)) / self.layer_sizes[-1]
        delta = self.backpropagate(layer_inputs, out_layer_diff)
        weights, biases = self.compute_weight_update(layers, delta)
        count = 1 if out_layer_diff.ndim == 1 else out_layer_diff.shape[0]
        return Gradients(weights, biases, error, count)

    def validation_error(self, inputs: Any, targets: Any) -> float:
        """Sum over examples of the mean squared output error."""
        output = self.eval(inputs)
        target = np.asarray(targets, dtype=float)
        if target.shape != output.shape:
            raise ShapeMismatchError(output.shape, target.shape, 'target')
        return float(np.sum((target - output) ** 2)) / self.layer_sizes[-1]

    # ------------------------------------------------------------------
    # Parameter update
    # ------------------------------------------------------------------

    def update_weights(
        self,
        update: Gradients,
        last_update: Gradients,
        examples: int,
        learning_rate: float,
        momentum_rate: Optional[float] = None,
        regularization_param: float = 0.0
    ) -> None:
        """
        Apply one gradient-descent step in place.

        Weight decay only shrinks ``weights[1]``; biases are never decayed.
        The momentum term reapplies ``last_update`` scaled by the current
        batch size.

        Args:
            update: Gradients summed over this epoch's batch
            last_update: Previous epoch's summed gradients (zeros without momentum)
            examples: Number of examples in the batch
            learning_rate: Step size
            momentum_rate: Momentum coefficient, or None to disable
            regularization_param: L2 coefficient; 0 disables decay
        """
        for it, (w, dw) in enumerate(zip(self.weights, update.weights)):
            if it == 1 and regularization_param != 0:
                w *= 1.0 - regularization_param * learning_rate / examples
            w -= dw / examples * learning_rate

        for b, db in zip(self.biases, update.biases):
            b -= db / examples * learning_rate

        if momentum_rate is not None:
            for w, dw in zip(self.weights, last_update.weights):
                w -= dw / examples * momentum_rate
            for b, db in zip(self.biases, last_update.biases):
                b -= db / examples * momentum_rate

    def cost(
        self,
        output_error: float,
        examples: int,
        regularization_param: float = 0.0
    ) -> float:
        """
        Reported cost: mean output error plus the L2 penalty.

        The penalty is the mean squared weight of each weight layer,
        averaged over layers and scaled by ``regularization_param``.
        An empty example set costs 0.
        """
        if examples == 0:
            return 0.0
        if regularization_param == 0:
            return output_error
        weight_layers = self.weights[1:]
        penalty = sum(float(np.mean(w ** 2)) for w in weight_layers)
        return output_error + penalty * regularization_param / len(weight_layers)

    def __repr__(self) -> str:
        return (
            f"Network(layer_sizes={self.layer_sizes}, "
            f"activation_fn={self.activation_fn.value})"
        )
