from __future__ import annotations

import base64
import hashlib

import numpy as np
from cryptography.fernet import Fernet

from attendance_backend.core.config import get_settings


class EmbeddingCrypto:
    """Fernet wrapper keeping face descriptors encrypted at rest."""

    def __init__(self, key_material: str):
        digest = hashlib.sha256(key_material.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, vector: np.ndarray) -> str:
        payload = np.asarray(vector, dtype=np.float32).tobytes()
        return self._fernet.encrypt(payload).decode("utf-8")

    def decrypt(self, ciphertext: str) -> np.ndarray:
        payload = self._fernet.decrypt(ciphertext.encode("utf-8"))
        return np.frombuffer(payload, dtype=np.float32)


embedding_crypto = EmbeddingCrypto(get_settings().embedding_cipher_key)
