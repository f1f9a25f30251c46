"""
Personal encryption key derived from the user's password.

Used for data the user wants readable on any of their devices (for example
scheduled message previews) without the server being able to read it.
"""

import base64
import binascii
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .primitives import derive_storage_key, generate_nonce, NONCE_SIZE

PBKDF2_ITERATIONS = 100000


def derive_personal_key(password: str, user_id: str) -> bytes:
    """Derive a 32-byte AES-256-GCM key from password + user id"""
    salt = f"e2ee-personal-{user_id}".encode()
    return derive_storage_key(password, salt, iterations=PBKDF2_ITERATIONS)


def personal_encrypt(key: bytes, plaintext: str) -> str:
    """Encrypt with a personal key; returns base64(iv || ciphertext)"""
    nonce = generate_nonce()
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode(), None)
    return base64.b64encode(nonce + ciphertext).decode()


def personal_decrypt(key: bytes, encoded: str) -> Optional[str]:
    """Decrypt base64(iv || ciphertext); returns None if the data does not authenticate"""
    try:
        combined = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(combined) <= NONCE_SIZE:
        return None
    try:
        plaintext = AESGCM(key).decrypt(combined[:NONCE_SIZE], combined[NONCE_SIZE:], None)
    except InvalidTag:
        return None
    try:
        return plaintext.decode()
    except UnicodeDecodeError:
        return None
