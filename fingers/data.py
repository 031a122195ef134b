"""
data.py
~~~~~~~

Dataset splitting and batch sampling.

All randomness comes from a ``numpy.random.Generator`` owned by the
caller. Sampling happens on the caller's thread, before any batch is
handed to the training workers.
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _split(
    rng: np.random.Generator,
    all_data: Sequence[T],
    validation_ratio: float
) -> Tuple[List[T], List[T]]:
    amount = int(validation_ratio * len(all_data))
    validation_idx = set()
    if amount:
        validation_idx = set(
            rng.choice(len(all_data), size=amount, replace=False).tolist()
        )

    train_data: List[T] = []
    validation_data: List[T] = []
    for it, example in enumerate(all_data):
        if it in validation_idx:
            validation_data.append(example)
        else:
            train_data.append(example)

    logger.info(
        f"Split {len(all_data)} examples into {len(train_data)} training "
        f"and {len(validation_data)} validation"
    )
    return train_data, validation_data


def split_data_sequences(
    rng: np.random.Generator,
    all_data: Sequence[Tuple[Sequence[float], Sequence[float]]],
    validation_ratio: float
) -> Tuple[list, list]:
    """
    Hold out ``floor(validation_ratio * len(all_data))`` random examples.

    Args:
        rng: Random source
        all_data: (input, target) pairs
        validation_ratio: Fraction to hold out

    Returns:
        (train_data, validation_data), each in the original order
    """
    return _split(rng, all_data, validation_ratio)


def split_data_sequences_autoencoder(
    rng: np.random.Generator,
    all_data: Sequence[Sequence[float]],
    validation_ratio: float
) -> Tuple[list, list]:
    """Same as :func:`split_data_sequences` for unlabeled feature vectors."""
    return _split(rng, all_data, validation_ratio)


def random_batch_supplier(
    rng: np.random.Generator,
    train_data: Sequence[T],
    batch_fraction: Optional[float] = None
) -> Callable[[], Optional[List[T]]]:
    """
    Build a batch supplier drawing a fresh random subset every call.

    Examples within a batch are distinct; successive batches may overlap.

    Args:
        rng: Random source
        train_data: Examples to sample from
        batch_fraction: Share of ``train_data`` per batch; None uses all of it

    Returns:
        Callable returning a batch, or None when ``train_data`` is empty
    """
    total = len(train_data)
    if batch_fraction is None:
        amount = total
    else:
        amount = min(total, max(1, int(batch_fraction * total)))

    def next_batch() -> Optional[List[T]]:
        if total == 0:
            return None
        idx = rng.choice(total, size=amount, replace=False)
        return [train_data[it] for it in idx]

    return next_batch


def fixed_batch_supplier(
    batches: Sequence[Sequence[T]]
) -> Callable[[], Optional[List[T]]]:
    """Supply the given batches in order, then signal exhaustion."""
    remaining = iter(batches)

    def next_batch() -> Optional[List[T]]:
        batch = next(remaining, None)
        return None if batch is None else list(batch)

    return next_batch


def xor_examples(
    rng: np.random.Generator,
    count: int
) -> List[Tuple[List[float], List[float]]]:
    """
    Generate XOR examples ``([a, b, 1.0], [a xor b])`` with random bits.

    The constant third input acts as a bias term.
    """
    bits = rng.integers(0, 2, size=(count, 2))
    return [
        ([float(a), float(b), 1.0], [float(a != b)])
        for a, b in bits.tolist()
    ]
