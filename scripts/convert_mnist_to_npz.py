#!/usr/bin/env python3
"""
Convert MNIST IDX files to the compressed NPZ format.

The IDX files (``train-images.idx3-ubyte`` and friends) are what the
MNIST site distributes; the NPZ archive is what the training server
loads through ``FINGERS_DATASET``.

Usage:
    python scripts/convert_mnist_to_npz.py [--source mnist] [--output data/mnist.npz]

The script will:
1. Load the training and test images/labels from the IDX files
2. Save them as one NPZ archive
3. Verify the conversion was successful
"""

import argparse
import os
import sys
from typing import Dict

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from fingers.exceptions import DatasetError
from fingers.mnist_loader import load_idx_image_array, load_idx_labels

IDX_FILES = {
    'train_images': 'train-images.idx3-ubyte',
    'train_labels': 'train-labels.idx1-ubyte',
    'test_images': 't10k-images.idx3-ubyte',
    'test_labels': 't10k-labels.idx1-ubyte',
}


def load_idx_dataset(source_dir: str) -> Dict[str, np.ndarray]:
    """
    Load every IDX file found in ``source_dir``.

    Images are flattened to rows of floats in [0, 1].
    """
    print(f"📂 Loading IDX data from: {source_dir}")

    arrays = {}
    for key, filename in IDX_FILES.items():
        path = os.path.join(source_dir, filename)
        if not os.path.exists(path):
            print(f"   - {filename} not found, skipping")
            continue
        if key.endswith('_images'):
            images = load_idx_image_array(path)
            arrays[key] = images.reshape(len(images), -1)
        else:
            arrays[key] = load_idx_labels(path)
        print(f"   - {key}: {len(arrays[key])} entries")

    if 'train_images' not in arrays:
        raise DatasetError("training images are required", source_dir)
    return arrays


def save_as_npz(arrays: Dict[str, np.ndarray], filepath: str) -> None:
    """Save the arrays as a compressed NPZ archive."""
    print(f"\n💾 Converting to NPZ format: {filepath}")

    out_dir = os.path.dirname(filepath)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    np.savez_compressed(filepath, **arrays)

    npz_size = os.path.getsize(filepath) / (1024 * 1024)  # MB
    print(f"✅ Saved successfully (size: {npz_size:.2f} MB)")


def verify_conversion(npz_filepath: str, arrays: Dict[str, np.ndarray]) -> bool:
    """Check that the archive holds exactly the loaded arrays."""
    print(f"\n🔍 Verifying conversion...")

    with np.load(npz_filepath) as data:
        for key, array in arrays.items():
            assert np.array_equal(data[key], array), f"{key} don't match!"

    print("✅ Verification passed! Data is identical.")
    return True


def main():
    """Main conversion function."""
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument('--source', default='mnist', help='directory holding the IDX files')
    parser.add_argument('--output', default=os.path.join('data', 'mnist.npz'))
    parser.add_argument('--force', action='store_true', help='overwrite an existing archive')
    args = parser.parse_args()

    if os.path.exists(args.output) and not args.force:
        print(f"❌ {args.output} already exists (use --force to overwrite)")
        sys.exit(1)

    try:
        arrays = load_idx_dataset(args.source)
        save_as_npz(arrays, args.output)
        verify_conversion(args.output, arrays)
    except DatasetError as e:
        print(f"\n❌ Error during conversion: {e}")
        sys.exit(1)

    print("\n" + "=" * 60)
    print("✅ CONVERSION COMPLETE!")
    print("=" * 60)
    print(f"\n💡 Serve it with: FINGERS_DATASET={args.output} python -m fingers.api_server")


if __name__ == '__main__':
    main()
