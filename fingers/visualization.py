"""
visualization.py
~~~~~~~~~~~~~~~~

Render learned features and autoencoder reconstructions as images.

Each hidden unit of the first weight layer is drawn as a grayscale
image of its incoming weights, which is the usual way to inspect what
an autoencoder has learned.
"""

import base64
import logging
import os
from io import BytesIO
from typing import List, Optional, Sequence, Tuple

import numpy as np

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from fingers.network import Network

logger = logging.getLogger(__name__)


def _check_shape(size: int, shape: Tuple[int, int]) -> None:
    if shape[0] * shape[1] != size:
        raise ValueError(f"cannot reshape {size} values into {shape}")


def feature_image(
    network: Network,
    index: int,
    gamma: float = 1.0,
    shape: Tuple[int, int] = (14, 14)
) -> np.ndarray:
    """
    Draw the incoming weights of hidden unit ``index`` as an image.

    The weight column is L2-normalised, min-max scaled to [0, 1], raised
    to ``gamma`` and mapped to 0-255.

    Args:
        network: Trained network
        index: Column of ``weights[1]``
        gamma: Contrast exponent
        shape: (rows, cols) of the output image

    Returns:
        uint8 array of the given shape
    """
    weights = network.weights[1]
    if not 0 <= index < weights.shape[1]:
        raise ValueError(
            f"feature index {index} out of range for {weights.shape[1]} units"
        )
    _check_shape(weights.shape[0], shape)

    column = weights[:, index]
    denom = np.sqrt(np.sum(column ** 2))
    if denom == 0:
        return np.zeros(shape, dtype=np.uint8)
    normalized = column / denom
    low, high = normalized.min(), normalized.max()
    if high == low:
        return np.zeros(shape, dtype=np.uint8)
    scaled = ((normalized - low) / (high - low)) ** gamma * 255.0
    return scaled.astype(np.uint8).reshape(shape)


def vector_image(values: Sequence[float], shape: Tuple[int, int] = (14, 14)) -> np.ndarray:
    """Map a vector of [0, 1] intensities to a uint8 image."""
    array = np.clip(np.asarray(values, dtype=float), 0.0, 1.0)
    _check_shape(array.size, shape)
    return (array * 255.0).astype(np.uint8).reshape(shape)


def _save_gray(image: np.ndarray, path: str) -> None:
    plt.imsave(path, image, cmap='gray', vmin=0, vmax=255)


def dump_features(
    network: Network,
    directory: str,
    gamma: float = 1.0,
    shape: Tuple[int, int] = (14, 14)
) -> List[str]:
    """
    Write one ``feature-0-NNNN.png`` per first-layer hidden unit.

    Returns:
        Paths of the written images
    """
    os.makedirs(directory, exist_ok=True)
    paths = []
    for index in range(network.weights[1].shape[1]):
        path = os.path.join(directory, f"feature-0-{index:04d}.png")
        _save_gray(feature_image(network, index, gamma, shape), path)
        paths.append(path)
    logger.info(f"Wrote {len(paths)} feature images to {directory}")
    return paths


def dump_samples(
    network: Network,
    examples: Sequence[Sequence[float]],
    directory: str,
    shape: Tuple[int, int] = (14, 14)
) -> List[Tuple[str, str]]:
    """
    Write ``NNNN-in.png`` and ``NNNN-out.png`` for each example.

    The output image is the network's reconstruction of the input.
    """
    os.makedirs(directory, exist_ok=True)
    pairs = []
    for it, example in enumerate(examples):
        in_path = os.path.join(directory, f"{it:04d}-in.png")
        out_path = os.path.join(directory, f"{it:04d}-out.png")
        _save_gray(vector_image(example, shape), in_path)
        _save_gray(vector_image(network.eval(example), shape), out_path)
        pairs.append((in_path, out_path))
    logger.info(f"Wrote {len(pairs)} sample pairs to {directory}")
    return pairs


def render_png_base64(image: np.ndarray, title: Optional[str] = None) -> str:
    """
    Create a base64-encoded PNG of a grayscale image.

    Args:
        image: 2-D uint8 array
        title: Optional caption drawn above the image

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(3, 3))
    plt.imshow(image, cmap='gray', vmin=0, vmax=255)
    if title:
        plt.title(title)
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64
