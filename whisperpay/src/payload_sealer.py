import base64
import json
import os
from typing import Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from whisperpay.src.models import SealedPayload

ALGORITHM = "AES-256-GCM"
KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class PayloadSealer:
    """AES-256-GCM sealing of JSON payloads under a per-user key"""

    @staticmethod
    def generate_key() -> bytes:
        return AESGCM.generate_key(bit_length=KEY_BYTES * 8)

    def seal_payload(self, key: bytes, payload: Any) -> SealedPayload:
        iv = os.urandom(NONCE_BYTES)
        plaintext = json.dumps(payload).encode("utf-8")
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return SealedPayload(
            algo=ALGORITHM,
            iv=_b64(iv),
            tag=_b64(tag),
            ciphertext=_b64(ciphertext),
        )

    def open_payload(self, key: bytes, sealed: SealedPayload) -> Any:
        iv = base64.b64decode(sealed.iv)
        data = base64.b64decode(sealed.ciphertext) + base64.b64decode(sealed.tag)
        return json.loads(AESGCM(key).decrypt(iv, data, None).decode("utf-8"))
