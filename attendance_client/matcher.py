from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np

from .config import DEFAULT_MATCH_THRESHOLD
from .logger import setup_logger
from .records import Identity, ResolvedIdentity, UnresolvedIdentity

OUTCOME_MATCHED = "matched"
OUTCOME_UNKNOWN = "unknown"
OUTCOME_NO_REFERENCE = "no_reference"

UNKNOWN_LABEL = "unknown"
MIN_DESCRIPTOR_LENGTH = 120

logger = setup_logger("attendance_client.matcher")


@dataclass(frozen=True)
class MatchResult:
    label: str
    distance: float
    outcome: str

    @property
    def matched(self) -> bool:
        return self.outcome == OUTCOME_MATCHED

    @property
    def confidence(self) -> float:
        return round(min(1.0, max(0.0, 1.0 - self.distance)), 3)


def _parse_descriptor(raw: Any) -> np.ndarray | None:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="ignore")
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw, (list, tuple)):
        return None
    try:
        vector = np.asarray([float(item) for item in raw], dtype=np.float32)
    except (TypeError, ValueError):
        return None
    if vector.ndim != 1 or not bool(np.isfinite(vector).all()):
        return None
    return vector


class ReferenceSet:
    """Labelled reference descriptors for one capture session."""

    def __init__(self, matrix: np.ndarray, row_labels: Sequence[str], student_ids: dict[str, int]) -> None:
        self.matrix = matrix
        self.row_labels = list(row_labels)
        self.student_ids = dict(student_ids)

    @classmethod
    def empty(cls, dimensions: int = 128) -> "ReferenceSet":
        return cls(np.empty((0, dimensions), dtype=np.float32), [], {})

    @classmethod
    def from_embeddings(
        cls,
        rows: Iterable[dict[str, Any]],
        min_length: int = MIN_DESCRIPTOR_LENGTH,
    ) -> "ReferenceSet":
        vectors: list[np.ndarray] = []
        row_labels: list[str] = []
        student_ids: dict[str, int] = {}
        dimensions: int | None = None

        for row in rows:
            vector = _parse_descriptor(row.get("embedding"))
            student_id = row.get("student_id")
            if vector is None or vector.size < min_length:
                logger.warning("Skipping invalid descriptor for student %s", student_id)
                continue
            if dimensions is None:
                dimensions = int(vector.size)
            elif vector.size != dimensions:
                logger.warning(
                    "Skipping descriptor for student %s: length %d, expected %d",
                    student_id,
                    vector.size,
                    dimensions,
                )
                continue

            roll = str(row.get("roll") or "").strip()
            label = roll or f"id_{student_id}"
            if student_id is not None and label not in student_ids:
                try:
                    student_ids[label] = int(student_id)
                except (TypeError, ValueError):
                    pass
            vectors.append(vector)
            row_labels.append(label)

        if not vectors:
            return cls.empty()
        return cls(np.vstack(vectors).astype(np.float32), row_labels, student_ids)

    @property
    def dimensions(self) -> int:
        return int(self.matrix.shape[1])

    @property
    def labels(self) -> list[str]:
        return sorted(set(self.row_labels))

    def is_empty(self) -> bool:
        return self.matrix.shape[0] == 0

    def __len__(self) -> int:
        return len(set(self.row_labels))

    def resolve(self, label: str) -> Identity:
        student_id = self.student_ids.get(label)
        if student_id is None:
            return UnresolvedIdentity(label)
        return ResolvedIdentity(student_id)


class FaceMatcher:
    def __init__(self, reference_set: ReferenceSet, threshold: float = DEFAULT_MATCH_THRESHOLD) -> None:
        self.reference_set = reference_set
        self.threshold = float(threshold)

    def match(self, descriptor: Sequence[float] | np.ndarray) -> MatchResult:
        refs = self.reference_set
        if refs.is_empty():
            return MatchResult(UNKNOWN_LABEL, float("inf"), OUTCOME_NO_REFERENCE)

        query = np.asarray(descriptor, dtype=np.float32).reshape(-1)
        if query.size != refs.dimensions:
            logger.warning("Descriptor length %d does not match reference length %d", query.size, refs.dimensions)
            return MatchResult(UNKNOWN_LABEL, float("inf"), OUTCOME_UNKNOWN)

        distances = np.linalg.norm(refs.matrix - query, axis=1)
        idx = int(np.argmin(distances))
        best = float(distances[idx])
        if best > self.threshold:
            return MatchResult(UNKNOWN_LABEL, best, OUTCOME_UNKNOWN)
        return MatchResult(refs.row_labels[idx], best, OUTCOME_MATCHED)
