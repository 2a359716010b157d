"""Running-mean centroid shared by online assignment and merges."""

from __future__ import annotations

from typing import Iterable

import numpy as np

from castscan.errors import DescriptorMismatch


class Centroid:
    """Arithmetic mean of the descriptors assigned to one identity.

    ``update`` is the O(D) online path used during assignment; ``merge_with``
    combines two means by their counts; ``from_descriptors`` is the full
    recompute used after a merge to discard accumulated rounding error. All
    three describe the same quantity, so a centroid built by any mix of them
    agrees with ``mean(descriptors)`` within floating-point tolerance.
    """

    __slots__ = ("_vector", "_count")

    def __init__(self, vector: np.ndarray, count: int) -> None:
        if count < 1:
            raise ValueError("Centroid requires at least one descriptor")
        self._vector = np.array(vector, dtype=np.float64).reshape(-1)
        self._count = int(count)

    @classmethod
    def from_descriptor(cls, descriptor: np.ndarray) -> "Centroid":
        return cls(descriptor, 1)

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[np.ndarray]) -> "Centroid":
        stacked = np.stack([np.asarray(d, dtype=np.float64).reshape(-1) for d in descriptors], axis=0)
        return cls(stacked.mean(axis=0), stacked.shape[0])

    @property
    def vector(self) -> np.ndarray:
        return self._vector.copy()

    @property
    def count(self) -> int:
        return self._count

    @property
    def dimension(self) -> int:
        return int(self._vector.shape[0])

    def _check(self, descriptor: np.ndarray) -> np.ndarray:
        vec = np.asarray(descriptor, dtype=np.float64).reshape(-1)
        if vec.shape[0] != self._vector.shape[0]:
            raise DescriptorMismatch(
                f"Descriptor dimension {vec.shape[0]} does not match centroid dimension {self._vector.shape[0]}"
            )
        return vec

    def distance(self, descriptor: np.ndarray) -> float:
        """Euclidean distance from ``descriptor`` to the current mean."""
        return float(np.linalg.norm(self._check(descriptor) - self._vector))

    def update(self, descriptor: np.ndarray) -> None:
        vec = self._check(descriptor)
        self._count += 1
        self._vector += (vec - self._vector) / self._count

    def merge_with(self, other: np.ndarray, other_count: int) -> None:
        """Fold in another mean of ``other_count`` descriptors.

        Incremental alternative to ``from_descriptors``; identity merges use the
        full recompute instead so the result is independent of merge order.
        """
        if other_count < 1:
            return
        vec = self._check(other)
        total = self._count + int(other_count)
        self._vector += (vec - self._vector) * (float(other_count) / total)
        self._count = total

    def __repr__(self) -> str:
        return f"Centroid(dim={self.dimension}, count={self._count})"
