#!/usr/bin/env python3
"""
Train an autoencoder on MNIST images and inspect what it learned.

Usage:
    python scripts/train_autoencoder.py train --config conf.json --net-defn net.json --output model.bin
    python scripts/train_autoencoder.py train --config conf.json --model model.bin --output model2.bin
    python scripts/train_autoencoder.py dump-features --model model.bin --dir features --gamma 0.8
    python scripts/train_autoencoder.py sample --model model.bin --dir samples --amount 16

Press Ctrl-C during training to stop at the end of the current epoch;
the best validated parameters are written out as usual.
"""

import argparse
import logging
import os
import sys

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from fingers.config import configure_logging, load_network_definition, load_train_config
from fingers.data import random_batch_supplier, split_data_sequences_autoencoder
from fingers.exceptions import FingersError
from fingers.mnist_loader import load_idx_images_halved
from fingers.model_persistence import load_model, save_model
from fingers.network import Network
from fingers.training import LearningFlag, Trainer, install_interrupt_handler
from fingers.visualization import dump_features, dump_samples

logger = logging.getLogger('train_autoencoder')

DEFAULT_IMAGES = os.path.join('mnist', 'train-images.idx3-ubyte')


def train(args: argparse.Namespace) -> None:
    learning = LearningFlag()
    install_interrupt_handler(learning)

    conf = load_train_config(args.config)
    all_data = load_idx_images_halved(args.images)
    rng = np.random.default_rng(args.seed)

    if args.model:
        net = load_model(args.model)
    elif args.net_defn:
        net = Network.from_definition(load_network_definition(args.net_defn))
        net.assign_random_weights(rng)
    else:
        raise SystemExit("either --model or --net-defn is required")

    train_data, validation_data = split_data_sequences_autoencoder(
        rng, all_data, conf.validation_ratio
    )
    supplier = random_batch_supplier(rng, train_data, conf.batch_fraction)

    trainer = Trainer(net, conf, learning=learning, workers=args.workers)
    result = trainer.train_autoencoder(supplier, validation_data or None)
    logger.info(f"Finished: {result.state.value} after {result.epochs} epoch(s)")

    save_model(net, args.output)


def features(args: argparse.Namespace) -> None:
    net = load_model(args.model)
    dump_features(net, args.dir, args.gamma)


def sample(args: argparse.Namespace) -> None:
    net = load_model(args.model)
    rng = np.random.default_rng(args.seed)
    images = load_idx_images_halved(args.images)
    idx = rng.choice(len(images), size=min(args.amount, len(images)), replace=False)
    dump_samples(net, [images[it] for it in idx], args.dir)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Autoencoder training on MNIST")
    sub = parser.add_subparsers(dest='command', required=True)

    p_train = sub.add_parser('train', help='train a network')
    p_train.add_argument('--config', required=True, help='train config JSON')
    p_train.add_argument('--net-defn', help='network definition JSON')
    p_train.add_argument('--model', help='existing model to continue training')
    p_train.add_argument('--output', required=True, help='where to write the model')
    p_train.add_argument('--images', default=DEFAULT_IMAGES)
    p_train.add_argument('--seed', type=int, default=None)
    p_train.add_argument('--workers', type=int, default=None)
    p_train.set_defaults(func=train)

    p_features = sub.add_parser('dump-features', help='write first-layer features as PNGs')
    p_features.add_argument('--model', required=True)
    p_features.add_argument('--dir', required=True)
    p_features.add_argument('--gamma', type=float, default=1.0)
    p_features.set_defaults(func=features)

    p_sample = sub.add_parser('sample', help='write input/reconstruction pairs as PNGs')
    p_sample.add_argument('--model', required=True)
    p_sample.add_argument('--dir', required=True)
    p_sample.add_argument('--amount', type=int, default=16)
    p_sample.add_argument('--images', default=DEFAULT_IMAGES)
    p_sample.add_argument('--seed', type=int, default=None)
    p_sample.set_defaults(func=sample)

    return parser


def main() -> None:
    configure_logging()
    args = build_parser().parse_args()
    try:
        args.func(args)
    except FingersError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == '__main__':
    main()
