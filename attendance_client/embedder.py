from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np

from .exceptions import EmbeddingProviderError


@dataclass(frozen=True)
class FaceDescriptor:
    vector: np.ndarray
    bbox: tuple[float, float, float, float]
    score: float = 1.0

    @property
    def area(self) -> float:
        x1, y1, x2, y2 = self.bbox
        return max(0.0, x2 - x1) * max(0.0, y2 - y1)


class EmbeddingProvider(Protocol):
    def ensure_ready(self) -> None:
        """Load the model or raise EmbeddingProviderError."""

    def detect(self, frame: Any) -> list[FaceDescriptor]:
        """Return zero or more descriptors for a BGR frame."""


class ArcFaceEmbedder:
    """insightface ``FaceAnalysis`` wrapper producing L2-normalised descriptors."""

    def __init__(self, model_name: str = "buffalo_l", det_size: tuple[int, int] = (640, 640), ctx_id: int = 0) -> None:
        self.model_name = model_name
        self.det_size = det_size
        self.ctx_id = ctx_id
        self.app = None

    def ensure_ready(self) -> None:
        if self.app is not None:
            return
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:
            raise EmbeddingProviderError("insightface is required for face descriptors.") from exc
        try:
            app = FaceAnalysis(name=self.model_name)
            # CUDAExecutionProvider is picked up when onnxruntime-gpu is installed.
            app.prepare(ctx_id=self.ctx_id, det_size=self.det_size)
        except Exception as exc:
            raise EmbeddingProviderError(f"Failed to load face model '{self.model_name}': {exc}") from exc
        self.app = app

    def detect(self, frame: Any) -> list[FaceDescriptor]:
        if self.app is None:
            raise EmbeddingProviderError("Face model is not loaded.")
        try:
            faces = self.app.get(frame)
        except Exception as exc:
            raise EmbeddingProviderError(f"Face detection failed: {exc}") from exc

        output: list[FaceDescriptor] = []
        for face in faces or []:
            emb = np.asarray(face.embedding, dtype=np.float32)
            norm = float(np.linalg.norm(emb))
            if norm <= 1e-9:
                continue
            box = [float(v) for v in face.bbox]
            if not all(np.isfinite(box)):
                continue
            output.append(
                FaceDescriptor(
                    vector=(emb / norm).astype(np.float32),
                    bbox=(box[0], box[1], box[2], box[3]),
                    score=float(face.det_score),
                )
            )
        return output
