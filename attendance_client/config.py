from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path

BASE_DIR = Path(os.getenv("CLIENT_STATE_DIR", str(Path.cwd() / "state")))
LOG_DIR = Path(os.getenv("CLIENT_LOG_DIR", str(BASE_DIR / "logs")))

# Cosine similarity accepted by the ArcFace embedder. On L2-normalised vectors
# Euclidean distance is sqrt(2 - 2 * cosine), so 0.62 becomes ~0.872.
MATCH_COSINE_THRESHOLD = 0.62


def cosine_to_distance(cosine: float) -> float:
    return round(math.sqrt(max(0.0, 2.0 - 2.0 * float(cosine))), 3)


DEFAULT_MATCH_THRESHOLD = cosine_to_distance(MATCH_COSINE_THRESHOLD)


@dataclass
class ClientConfig:
    api_base_url: str = field(default_factory=lambda: os.getenv("API_BASE_URL", "http://127.0.0.1:4000"))
    api_prefix: str = "/api/v1"
    login_username: str = field(default_factory=lambda: os.getenv("CLIENT_USERNAME", ""))
    login_password: str = field(default_factory=lambda: os.getenv("CLIENT_PASSWORD", ""))
    camera_index: int = field(default_factory=lambda: int(os.getenv("CLIENT_CAMERA_INDEX", "0")))
    # Euclidean distance above which a face is reported as "unknown".
    match_threshold: float = field(
        default_factory=lambda: float(os.getenv("CLIENT_MATCH_THRESHOLD", str(DEFAULT_MATCH_THRESHOLD)))
    )
    cooldown_seconds: float = field(default_factory=lambda: float(os.getenv("CLIENT_COOLDOWN_SECONDS", "45")))
    scan_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("CLIENT_SCAN_INTERVAL_SECONDS", "0.3"))
    )
    max_faces: int = field(default_factory=lambda: int(os.getenv("CLIENT_MAX_FACES", "10")))
    request_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("CLIENT_REQUEST_TIMEOUT_SECONDS", "8.0"))
    )
    queue_flush_batch: int = field(default_factory=lambda: int(os.getenv("CLIENT_QUEUE_FLUSH_BATCH", "50")))
    queue_db_path: str = field(
        default_factory=lambda: os.getenv("CLIENT_QUEUE_DB_PATH", str(BASE_DIR / "offline_attendance.db"))
    )

    @property
    def api_root(self) -> str:
        return f"{self.api_base_url.rstrip('/')}{self.api_prefix}"
