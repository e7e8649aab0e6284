"""
Gallery matching

FaceIndex is immutable; IndexHolder publishes a new one when the gallery
changes so matchers never see a half-built index.
"""
import logging
import math
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Hashable, Iterable, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchResult:
    person_id: Optional[Hashable]
    person_name: Optional[str]
    distance: float

    @property
    def is_known(self) -> bool:
        return self.person_id is not None

    @property
    def confidence(self) -> float:
        if math.isinf(self.distance):
            return 0.0
        return max(0.0, 1.0 - self.distance)


class FaceIndex:
    def __init__(self, ids: Sequence[Hashable], names: Sequence[Optional[str]], matrix: np.ndarray):
        self.ids: Tuple[Hashable, ...] = tuple(ids)
        self.names: Tuple[Optional[str], ...] = tuple(names)
        self.matrix = matrix
        self.matrix.setflags(write=False)

    @classmethod
    def build(cls, gallery: Iterable[Tuple]) -> "FaceIndex":
        """
        Build from (person_id, name, descriptor) or (person_id, descriptor)
        entries. Iteration order is kept and decides ties.

        Rows whose shape differs from the most common one are skipped, so a
        single stray descriptor cannot hide the rest of the gallery.
        """
        entries = []
        for entry in gallery:
            if len(entry) == 2:
                person_id, descriptor = entry
                name = None
            else:
                person_id, name, descriptor = entry
            entries.append((person_id, name, np.asarray(descriptor, dtype=np.float64)))

        shapes = Counter(vector.shape for _, _, vector in entries)
        ids, names, rows = [], [], []
        if shapes:
            shape = shapes.most_common(1)[0][0]
            for person_id, name, vector in entries:
                if vector.shape != shape:
                    logger.warning(
                        "Skipping %s: descriptor shape %s does not match %s",
                        person_id, vector.shape, shape,
                    )
                    continue
                ids.append(person_id)
                names.append(name)
                rows.append(vector)

        matrix = np.stack(rows) if rows else np.empty((0, 0), dtype=np.float64)
        return cls(ids, names, matrix)

    def __len__(self) -> int:
        return len(self.ids)

    def distances(self, query: np.ndarray) -> np.ndarray:
        query = np.asarray(query, dtype=np.float64)
        if len(self) and query.shape != self.matrix.shape[1:]:
            raise ValueError(f"Query shape {query.shape} does not match gallery {self.matrix.shape[1:]}")
        return np.linalg.norm(self.matrix - query, axis=1)

    def match(self, query: np.ndarray, threshold: float) -> MatchResult:
        if len(self) == 0:
            return MatchResult(None, None, math.inf)

        distances = self.distances(query)
        best = int(np.argmin(distances))
        distance = float(distances[best])

        if distance <= threshold:
            return MatchResult(self.ids[best], self.names[best], distance)
        return MatchResult(None, None, distance)


class IndexHolder:
    """Build-then-swap publisher for the gallery index"""

    def __init__(self):
        self._index = FaceIndex.build([])
        self._revision = None
        self._swap_lock = threading.Lock()
        self._build_lock = threading.Lock()

    @property
    def current(self) -> FaceIndex:
        with self._swap_lock:
            return self._index

    @property
    def revision(self):
        return self._revision

    def publish(self, index: FaceIndex, revision=None):
        with self._swap_lock:
            self._index = index
            self._revision = revision

    def sync(self, gallery) -> FaceIndex:
        """Rebuild from the gallery store when its revision moved"""
        if gallery.revision == self._revision:
            return self.current

        with self._build_lock:
            revision = gallery.revision
            if revision == self._revision:
                return self.current
            index = FaceIndex.build(
                (person.person_id, person.name, person.descriptor)
                for person in gallery.list_all()
            )
            self.publish(index, revision)
            logger.info("Gallery index rebuilt: %d people (revision %s)", len(index), revision)
            return index
