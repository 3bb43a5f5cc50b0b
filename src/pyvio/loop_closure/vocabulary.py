"""Visual vocabulary for Bag of Visual Words place recognition.

A visual vocabulary enables fast image similarity comparison by:
1. Clustering descriptors into "visual words" (k-means centers)
2. Representing images as histograms of visual word occurrences
3. Comparing images via histogram similarity (cosine distance)

The vocabulary is trained offline (``VisualVocabulary.train``), then used
at runtime to describe and compare keyframes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np
from sklearn.cluster import MiniBatchKMeans

logger = logging.getLogger(__name__)


@dataclass
class VisualVocabulary:
    """Bag of Visual Words vocabulary for ORB descriptors.

    Attributes:
        words: Cluster centers (visual words), shape (n_words, 32)
        n_words: Number of visual words in vocabulary
        idf: Inverse document frequency weights, shape (n_words,)
    """

    words: np.ndarray  # (n_words, 32) float32 cluster centers
    n_words: int
    idf: np.ndarray  # (n_words,) IDF weights

    def __post_init__(self) -> None:
        self.words = np.asarray(self.words, dtype=np.float32)
        self.idf = np.asarray(self.idf, dtype=np.float32).reshape(-1)
        if self.words.ndim != 2 or len(self.words) != self.n_words:
            raise ValueError(
                f"Vocabulary expects {self.n_words} words, got shape {self.words.shape}"
            )
        if len(self.idf) != self.n_words:
            raise ValueError(f"IDF has {len(self.idf)} weights for {self.n_words} words")

    def quantize(self, descriptors: np.ndarray) -> np.ndarray:
        """Return the index of the nearest visual word for each descriptor."""
        descriptors_float = np.asarray(descriptors).astype(np.float32)
        # Squared distances without materializing (N, n_words, 32)
        distances = (
            np.sum(descriptors_float**2, axis=1)[:, np.newaxis]
            - 2.0 * descriptors_float @ self.words.T
            + np.sum(self.words**2, axis=1)[np.newaxis, :]
        )
        return np.argmin(distances, axis=1)

    def describe(self, descriptors: np.ndarray | None) -> np.ndarray:
        """Convert image descriptors to Bag of Words vector.

        Args:
            descriptors: ORB descriptors, shape (N, 32) uint8

        Returns:
            BoW vector, shape (n_words,), L2 normalized with TF-IDF weighting
        """
        if descriptors is None or len(descriptors) == 0:
            return np.zeros(self.n_words, dtype=np.float32)

        word_indices = self.quantize(descriptors)
        histogram = np.bincount(word_indices, minlength=self.n_words).astype(np.float32)
        tfidf = histogram * self.idf

        norm = np.linalg.norm(tfidf)
        if norm > 0:
            tfidf = tfidf / norm

        return tfidf

    def similarity(self, bow1: np.ndarray, bow2: np.ndarray) -> float:
        """Compute cosine similarity between two BoW vectors.

        Args:
            bow1: First BoW vector (L2 normalized)
            bow2: Second BoW vector (L2 normalized)

        Returns:
            Cosine similarity in [0, 1]
        """
        return float(np.dot(bow1, bow2))

    def save(self, path: str | Path) -> None:
        """Save vocabulary to .npz file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(
            path,
            words=self.words,
            n_words=self.n_words,
            idf=self.idf,
        )

    @classmethod
    def load(cls, path: str | Path) -> VisualVocabulary:
        """Load vocabulary from .npz file.

        Raises:
            FileNotFoundError: If the file doesn't exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Vocabulary file not found: {path}")
        with np.load(path) as data:
            return cls(
                words=data["words"],
                n_words=int(data["n_words"]),
                idf=data["idf"],
            )

    @classmethod
    def from_words(cls, words: np.ndarray) -> VisualVocabulary:
        """Create vocabulary from cluster centers with uniform IDF."""
        n_words = len(words)
        return cls(
            words=np.asarray(words, dtype=np.float32),
            n_words=n_words,
            idf=np.ones(n_words, dtype=np.float32),
        )

    @classmethod
    def train(
        cls,
        descriptor_sets: Sequence[np.ndarray],
        n_words: int,
        batch_size: int = 10000,
        max_iter: int = 100,
        random_state: int = 42,
    ) -> VisualVocabulary:
        """Train a vocabulary with mini-batch k-means.

        Each entry of ``descriptor_sets`` holds the descriptors of one image;
        the images also serve as documents for the IDF weights.

        Args:
            descriptor_sets: Per-image ORB descriptors, each (N_i, 32)
            n_words: Number of visual words (clusters)
            batch_size: Mini-batch size for k-means
            max_iter: Maximum k-means iterations
            random_state: Seed of the k-means initialization

        Raises:
            ValueError: If there are fewer descriptors than words
        """
        sets = [np.asarray(d) for d in descriptor_sets if d is not None and len(d) > 0]
        if not sets:
            raise ValueError("No descriptors to train a vocabulary on")
        stacked = np.vstack(sets).astype(np.float32)
        if n_words <= 0 or len(stacked) < n_words:
            raise ValueError(
                f"Need at least {n_words} descriptors to train {n_words} words, got {len(stacked)}"
            )

        logger.info("Training %d words on %d descriptors", n_words, len(stacked))
        kmeans = MiniBatchKMeans(
            n_clusters=n_words,
            random_state=random_state,
            batch_size=batch_size,
            n_init="auto",
            max_iter=max_iter,
        )
        kmeans.fit(stacked)
        logger.info("k-means finished after %d iterations", kmeans.n_iter_)

        vocabulary = cls.from_words(kmeans.cluster_centers_)
        document_frequencies = np.zeros(n_words, dtype=np.int64)
        for descriptors in sets:
            document_frequencies[np.unique(vocabulary.quantize(descriptors))] += 1
        vocabulary.update_idf(document_frequencies, len(sets))
        return vocabulary

    def update_idf(self, document_frequencies: np.ndarray, n_documents: int) -> None:
        """Update IDF weights based on document frequencies.

        IDF(word) = log(N / df(word))

        Args:
            document_frequencies: Count of documents containing each word, shape (n_words,)
            n_documents: Total number of documents
        """
        df_smoothed = np.maximum(document_frequencies, 1)
        self.idf = np.log(n_documents / df_smoothed).astype(np.float32)
