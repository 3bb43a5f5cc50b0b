"""Place recognition index used to find loop closure candidates.

The detector talks to any object implementing ``PlaceIndex``. The bundled
``PlaceDatabase`` stores TF-IDF bag-of-words vectors and ranks frames by
cosine similarity.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np

from .vocabulary import VisualVocabulary


@dataclass(frozen=True)
class QueryResult:
    """Result from a place recognition query.

    Attributes:
        frame_id: Id of the matching frame
        score: Similarity score (higher is more similar)
    """

    frame_id: int
    score: float


@runtime_checkable
class PlaceIndex(Protocol):
    """Descriptor index queried for loop closure candidates."""

    def add(self, frame_id: int, descriptors: np.ndarray) -> None:
        """Index the descriptors of a frame."""
        ...

    def query(
        self,
        descriptors: np.ndarray,
        max_frame_id: int,
        max_results: int | None = None,
    ) -> list[QueryResult]:
        """Return indexed frames with id <= ``max_frame_id``, best first."""
        ...

    def similarity(self, descriptors_a: np.ndarray, descriptors_b: np.ndarray) -> float:
        """Score two descriptor sets on the same scale as ``query``."""
        ...


class PlaceDatabase:
    """Bag-of-words place index.

    Stores BoW representations of frames and answers similarity queries
    using cosine distance.
    """

    def __init__(self, vocabulary: VisualVocabulary) -> None:
        """Initialize place database.

        Args:
            vocabulary: Visual vocabulary for BoW conversion
        """
        self._vocabulary = vocabulary
        self._descriptors: dict[int, np.ndarray] = {}

        # BoW matrix for fast batch queries: (n_entries, n_words)
        self._bow_matrix: np.ndarray | None = None
        self._frame_ids: list[int] = []

        self._document_frequencies: np.ndarray = np.zeros(
            vocabulary.n_words, dtype=np.int64
        )

    def add(self, frame_id: int, descriptors: np.ndarray) -> None:
        """Add a frame to the database.

        Raises:
            ValueError: If the frame id is already indexed
        """
        if frame_id in self._descriptors:
            raise ValueError(f"Frame {frame_id} already in place database")

        bow_vector = self._vocabulary.describe(descriptors)
        self._descriptors[frame_id] = np.array(descriptors, copy=True)
        self._frame_ids.append(frame_id)

        if self._bow_matrix is None:
            self._bow_matrix = bow_vector.reshape(1, -1)
        else:
            self._bow_matrix = np.vstack([self._bow_matrix, bow_vector])

        word_indices = np.where(bow_vector > 0)[0]
        self._document_frequencies[word_indices] += 1

    def query(
        self,
        descriptors: np.ndarray,
        max_frame_id: int,
        max_results: int | None = None,
    ) -> list[QueryResult]:
        """Query database for similar places.

        Args:
            descriptors: Query ORB descriptors, shape (N, 32)
            max_frame_id: Only frames with id <= max_frame_id are returned
            max_results: Maximum number of results (None for all)

        Returns:
            Results with positive score, sorted by score (highest first)
        """
        if self._bow_matrix is None:
            return []

        query_bow = self._vocabulary.describe(descriptors)
        similarities = self._bow_matrix @ query_bow

        frame_ids = np.asarray(self._frame_ids)
        mask = (frame_ids <= max_frame_id) & (similarities > 0)
        valid_indices = np.where(mask)[0]
        if len(valid_indices) == 0:
            return []

        # Stable sort keeps older frames first on equal scores
        order = np.argsort(-similarities[valid_indices], kind="stable")
        if max_results is not None:
            order = order[:max_results]

        return [
            QueryResult(
                frame_id=int(frame_ids[valid_indices[i]]),
                score=float(similarities[valid_indices[i]]),
            )
            for i in order
        ]

    def similarity(self, descriptors_a: np.ndarray, descriptors_b: np.ndarray) -> float:
        """Cosine similarity of the BoW vectors of two descriptor sets."""
        return self._vocabulary.similarity(
            self._vocabulary.describe(descriptors_a),
            self._vocabulary.describe(descriptors_b),
        )

    def update_idf(self) -> None:
        """Update IDF weights from the indexed frames and re-describe them."""
        n_documents = len(self._frame_ids)
        if n_documents == 0:
            return
        self._vocabulary.update_idf(self._document_frequencies, n_documents)
        for i, frame_id in enumerate(self._frame_ids):
            self._bow_matrix[i] = self._vocabulary.describe(self._descriptors[frame_id])

    @property
    def vocabulary(self) -> VisualVocabulary:
        """Return the vocabulary."""
        return self._vocabulary

    def __len__(self) -> int:
        return len(self._frame_ids)
