"""
mnist_loader.py
~~~~~~~~~~~~~~~

Loaders for MNIST-style image sets.

Supports the raw IDX files (``train-images.idx3-ubyte`` and friends)
and the compressed NPZ archives written by
``scripts/convert_mnist_to_npz.py``. Images come back as lists of float
vectors scaled to [0, 1], which is what the trainer consumes.
"""

import logging
import os
from typing import List, Optional, Tuple

import numpy as np

from fingers.exceptions import DatasetError

logger = logging.getLogger(__name__)

IMAGES_MAGIC = 2051
LABELS_MAGIC = 2049


def _read_idx(path: str, magic: int, header_ints: int) -> Tuple[Tuple[int, ...], np.ndarray]:
    """Read a big-endian IDX file, returning the header dimensions and payload."""
    try:
        with open(path, 'rb') as f:
            raw = f.read()
    except OSError as e:
        raise DatasetError(f"cannot read dataset: {e}", path) from e

    header_len = 4 * header_ints
    if len(raw) < header_len:
        raise DatasetError("truncated IDX header", path)

    header = np.frombuffer(raw[:header_len], dtype='>u4')
    if int(header[0]) != magic:
        raise DatasetError(
            f"bad magic number {int(header[0])} (expected {magic})", path
        )

    dims = tuple(int(d) for d in header[1:])
    expected = int(np.prod(dims))
    payload = np.frombuffer(raw[header_len:], dtype=np.uint8)
    if payload.size < expected:
        raise DatasetError(
            f"truncated IDX payload: {payload.size} of {expected} bytes", path
        )
    return dims, payload[:expected]


def load_idx_image_array(path: str) -> np.ndarray:
    """
    Load IDX3 images as a float array of shape (count, rows, cols).

    Raises:
        DatasetError: If the file is missing or malformed
    """
    (count, rows, cols), payload = _read_idx(path, IMAGES_MAGIC, 4)
    return payload.reshape(count, rows, cols).astype(float) / 255.0


def load_idx_images(path: str) -> List[np.ndarray]:
    """Load IDX3 images as flattened float vectors in [0, 1]."""
    images = load_idx_image_array(path)
    logger.info(f"Loaded {len(images)} images from {path}")
    return [image.ravel() for image in images]


def load_idx_images_halved(path: str) -> List[np.ndarray]:
    """
    Load IDX3 images downsampled by 2x2 averaging (28x28 becomes 14x14).

    Odd trailing rows or columns are dropped.
    """
    images = load_idx_image_array(path)
    count, rows, cols = images.shape
    rows, cols = rows - rows % 2, cols - cols % 2
    pooled = images[:, :rows, :cols].reshape(
        count, rows // 2, 2, cols // 2, 2
    ).mean(axis=(2, 4))
    logger.info(
        f"Loaded {count} images from {path}, halved to "
        f"{rows // 2}x{cols // 2}"
    )
    return [image.ravel() for image in pooled]


def load_idx_labels(path: str) -> np.ndarray:
    """
    Load IDX1 labels as an integer array.

    Raises:
        DatasetError: If the file is missing or malformed
    """
    (count,), payload = _read_idx(path, LABELS_MAGIC, 2)
    logger.info(f"Loaded {count} labels from {path}")
    return payload.astype(int)


def load_npz(
    path: str,
    images_key: str = 'train_images',
    labels_key: Optional[str] = None
) -> Tuple[List[np.ndarray], Optional[np.ndarray]]:
    """
    Load images (and optionally labels) from an NPZ archive.

    Args:
        path: Archive written by ``convert_mnist_to_npz.py``
        images_key: Array holding the images, one per row
        labels_key: Array holding integer labels, if wanted

    Returns:
        (images, labels): flattened float vectors and the labels or None

    Raises:
        DatasetError: If the archive or a key is missing
    """
    if not os.path.exists(path):
        raise DatasetError("dataset file not found", path)

    try:
        with np.load(path) as data:
            images = np.asarray(data[images_key], dtype=float)
            labels = None
            if labels_key is not None:
                labels = np.asarray(data[labels_key]).astype(int)
    except KeyError as e:
        raise DatasetError(f"missing array {e}", path) from e
    except (OSError, ValueError) as e:
        raise DatasetError(f"cannot load archive: {e}", path) from e

    if images.ndim < 2:
        raise DatasetError(f"expected image rows, got shape {images.shape}", path)
    if labels is not None and len(labels) != len(images):
        raise DatasetError(
            f"{len(images)} images but {len(labels)} labels", path
        )

    vectors = [image.ravel() for image in images.reshape(len(images), -1)]
    logger.info(f"Loaded {len(vectors)} images from {path}")
    return vectors, labels


def to_classification_examples(
    images: List[np.ndarray],
    labels: np.ndarray,
    num_classes: int = 10
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Pair each image with a one-hot target vector."""
    if len(images) != len(labels):
        raise DatasetError(f"{len(images)} images but {len(labels)} labels")
    targets = np.eye(num_classes)[np.asarray(labels, dtype=int)]
    return list(zip(images, targets))
