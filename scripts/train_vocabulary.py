#!/usr/bin/env python3
"""Train a visual vocabulary for loop closure detection.

This script trains a Bag of Visual Words vocabulary by:
1. Extracting ORB descriptors from the left images of every sequence
2. Running mini-batch k-means to find visual word centers
3. Weighting the words by inverse document frequency over the images

Usage:
    python scripts/train_vocabulary.py --data-dir /path/to/euroc
    python scripts/train_vocabulary.py --n-words 2000 --max-images 10000

Sequences in EuRoC layout (``<seq>/mav0/cam0/data/*.png``) are used when
present; otherwise every PNG below ``--data-dir`` is used.
"""

import argparse
import logging
import sys
from pathlib import Path

import cv2
import numpy as np

from pyvio.frontend import FeatureDetector
from pyvio.loop_closure import VisualVocabulary

logger = logging.getLogger("train_vocabulary")


def find_images(data_dir: Path) -> list[Path]:
    """Return the training images below ``data_dir`` in sorted order."""
    images = sorted(data_dir.glob("*/mav0/cam0/data/*.png"))
    if not images:
        images = sorted(data_dir.rglob("*.png"))
    return images


def collect_descriptors(
    image_paths: list[Path],
    n_features: int = 500,
    max_images: int | None = None,
    skip_every: int = 1,
) -> list[np.ndarray]:
    """Extract ORB descriptors per image.

    Args:
        image_paths: Images to process
        n_features: Number of ORB features per image
        max_images: Maximum images to process (None for all)
        skip_every: Process every Nth image (for speed)

    Returns:
        One (N_i, 32) descriptor array per image that produced features
    """
    detector = FeatureDetector(n_features=n_features)
    descriptor_sets: list[np.ndarray] = []

    for i, img_path in enumerate(image_paths):
        if max_images and len(descriptor_sets) >= max_images:
            logger.info("Reached max_images limit (%d)", max_images)
            break
        if i % skip_every != 0:
            continue

        img = cv2.imread(str(img_path), cv2.IMREAD_GRAYSCALE)
        if img is None:
            logger.warning("Could not read %s", img_path)
            continue

        features = detector.detect(img)
        if len(features) > 0:
            descriptor_sets.append(features.descriptors)

    logger.info(
        "Collected %d descriptors from %d images",
        sum(len(d) for d in descriptor_sets),
        len(descriptor_sets),
    )
    return descriptor_sets


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Train visual vocabulary for loop closure",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=Path("data/euroc"),
        help="Directory with training images (default: data/euroc)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/vocabulary.npz"),
        help="Output vocabulary file (default: data/vocabulary.npz)",
    )
    parser.add_argument("--n-words", type=int, default=1000, help="Number of visual words")
    parser.add_argument("--n-features", type=int, default=500, help="ORB features per image")
    parser.add_argument("--max-images", type=int, default=None, help="Max images to process")
    parser.add_argument(
        "--skip-every", type=int, default=3, help="Process every Nth image (default: 3)"
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s: %(message)s")

    if not args.data_dir.exists():
        logger.error("Data directory not found: %s", args.data_dir)
        sys.exit(1)

    image_paths = find_images(args.data_dir)
    if not image_paths:
        logger.error("No images found below %s", args.data_dir)
        sys.exit(1)
    logger.info("Found %d images in %s", len(image_paths), args.data_dir)

    descriptor_sets = collect_descriptors(
        image_paths,
        n_features=args.n_features,
        max_images=args.max_images,
        skip_every=args.skip_every,
    )
    vocabulary = VisualVocabulary.train(descriptor_sets, args.n_words)
    vocabulary.save(args.output)

    logger.info("Vocabulary with %d words saved to %s", vocabulary.n_words, args.output)


if __name__ == "__main__":
    main()
