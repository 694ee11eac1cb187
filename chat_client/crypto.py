"""
Room key derivation and AES-256-GCM helpers.

Key:      PBKDF2-HMAC-SHA256(password, salt, 200000 iterations) -> 32 bytes
Payload:  {"iv": b64(12-byte nonce), "cipher": b64(ciphertext || 16-byte tag)}

The relay only ever sees payloads; keys and passwords never leave the client.
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from chat_client.constants import PBKDF2_ITERATIONS, KEY_BYTES, NONCE_BYTES


def derive_room_key(password: str, salt_b64: str, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Derive the room key from the room password and the server-issued salt.

    Deterministic: identical password and salt always yield the identical key.
    """
    salt = base64.b64decode(salt_b64)
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt(key: bytes, plaintext: str) -> dict:
    """Encrypt UTF-8 text under a fresh random nonce."""
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return {
        "iv": base64.b64encode(nonce).decode("ascii"),
        "cipher": base64.b64encode(ciphertext).decode("ascii"),
    }


def decrypt(key: bytes, payload: dict) -> Optional[str]:
    """
    Decrypt a payload produced by `encrypt`.

    Returns None on a wrong key, tampering or any malformed input; never raises.
    """
    try:
        nonce = base64.b64decode(payload["iv"], validate=True)
        ciphertext = base64.b64decode(payload["cipher"], validate=True)
        if len(nonce) != NONCE_BYTES:
            return None
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, KeyError, TypeError, ValueError, binascii.Error):
        return None
