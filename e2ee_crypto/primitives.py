"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations shared by the
pairwise (X3DH + Double Ratchet) and group (Sender Key) protocols.
"""

import os
import hmac
import hashlib
from typing import Tuple
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

# Field prime of Curve25519, used for the Edwards -> Montgomery map
_CURVE25519_P = 2 ** 255 - 19


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DuplicateMessageError(CryptoError):
    """A message key was requested for a message that was already consumed"""
    pass


class TooManySkippedError(CryptoError):
    """A message claims a counter too far ahead of the current chain position"""
    pass


class UnknownChainError(CryptoError):
    """A sender key message references a chain we hold no state for"""
    pass


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def generate_identity_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """
    Generate an Ed25519 keypair for digital signatures (identity keys).

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    try:
        return private_key.exchange(public_key)
    except ValueError as e:
        raise CryptoError(f"Diffie-Hellman exchange failed: {e}")


def hkdf_derive(input_key: bytes, salt: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """HKDF-SHA256 extract-and-expand"""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    )
    return hkdf.derive(input_key)


def kdf_chain(chain_key: bytes, info: bytes) -> Tuple[bytes, bytes]:
    """
    Symmetric-key ratchet step.

    The message key and the next chain key are derived from the current chain
    key with distinct single-byte inputs, so neither reveals the other.

    Args:
        chain_key: Current 32-byte chain key
        info: Protocol-specific context string

    Returns:
        Tuple of (next_chain_key, message_key)
    """
    message_key = hkdf_derive(b"\x01", salt=chain_key, info=info)
    next_chain_key = hkdf_derive(b"\x02", salt=chain_key, info=info)
    return next_chain_key, message_key


def kdf_root(root_key: bytes, dh_output: bytes, info: bytes) -> Tuple[bytes, bytes]:
    """
    Root KDF for DH ratchet step.

    Args:
        root_key: Current root key
        dh_output: DH exchange output
        info: Protocol-specific context string

    Returns:
        Tuple of (new_root_key, new_chain_key)
    """
    output = hkdf_derive(dh_output, salt=root_key, info=info, length=2 * KEY_SIZE)
    return output[:KEY_SIZE], output[KEY_SIZE:]


def generate_nonce() -> bytes:
    """Random 96-bit AEAD nonce"""
    return os.urandom(NONCE_SIZE)


def generate_key() -> bytes:
    """Random 256-bit symmetric key"""
    return os.urandom(KEY_SIZE)


def random_u32() -> int:
    """Uniformly random unsigned 32-bit integer"""
    return int.from_bytes(os.urandom(4), "big")


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> Tuple[bytes, bytes]:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (nonce, ciphertext + tag)
    """
    nonce = generate_nonce()
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce, ciphertext


def decrypt_message(key: bytes, nonce: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        nonce: 12-byte nonce used at encryption
        ciphertext: Encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        CryptoError: If decryption fails
    """
    if len(nonce) != NONCE_SIZE:
        raise CryptoError("Invalid nonce length")
    if len(ciphertext) < TAG_SIZE:
        raise CryptoError("Ciphertext too short")

    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, ciphertext, associated_data)
    except InvalidTag:
        raise CryptoError("Decryption failed: message may be tampered or key mismatch")


def derive_storage_key(passphrase: str, salt: bytes, iterations: int = 100000) -> bytes:
    """
    Derive an at-rest encryption key from a passphrase using PBKDF2.

    Args:
        passphrase: User-supplied secret
        salt: Per-store random salt
        iterations: PBKDF2 iteration count

    Returns:
        32-byte encryption key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode())


def sign(private_key: Ed25519PrivateKey, data: bytes) -> bytes:
    """Ed25519 signature over data"""
    return private_key.sign(data)


def verify_signature(public_key: Ed25519PublicKey, signature: bytes, data: bytes) -> bool:
    """Check an Ed25519 signature; returns False instead of raising"""
    try:
        public_key.verify(signature, data)
        return True
    except InvalidSignature:
        return False


def identity_private_to_dh(private_key: Ed25519PrivateKey) -> X25519PrivateKey:
    """
    Convert an Ed25519 signing key to the equivalent X25519 private key.

    The X25519 scalar is the first half of SHA-512 over the Ed25519 seed;
    clamping is applied by the X25519 implementation.
    """
    seed = serialize_identity_private_key(private_key)
    return X25519PrivateKey.from_private_bytes(hashlib.sha512(seed).digest()[:32])


def identity_public_to_dh(public_key: Ed25519PublicKey) -> X25519PublicKey:
    """
    Convert an Ed25519 verifying key to an X25519 public key.

    Uses the birational map u = (1 + y) / (1 - y) from the twisted Edwards
    curve to its Montgomery form.
    """
    encoded = serialize_identity_public_key(public_key)
    y = int.from_bytes(encoded, "little") & ((1 << 255) - 1)
    p = _CURVE25519_P
    u = (1 + y) * pow((1 - y) % p, p - 2, p) % p
    return X25519PublicKey.from_public_bytes(u.to_bytes(32, "little"))


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    try:
        return X25519PublicKey.from_public_bytes(key_bytes)
    except ValueError as e:
        raise CryptoError(f"Invalid X25519 public key: {e}")


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    """Serialize X25519 private key to raw bytes"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    """Deserialize raw bytes to X25519 private key"""
    return X25519PrivateKey.from_private_bytes(key_bytes)


def serialize_identity_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Serialize Ed25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_identity_public_key(key_bytes: bytes) -> Ed25519PublicKey:
    """Deserialize bytes to Ed25519 public key"""
    try:
        return Ed25519PublicKey.from_public_bytes(key_bytes)
    except ValueError as e:
        raise CryptoError(f"Invalid Ed25519 public key: {e}")


def serialize_identity_private_key(private_key: Ed25519PrivateKey) -> bytes:
    """Serialize Ed25519 private key (seed) to bytes"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def deserialize_identity_private_key(key_bytes: bytes) -> Ed25519PrivateKey:
    """Deserialize a 32-byte seed to an Ed25519 private key"""
    return Ed25519PrivateKey.from_private_bytes(key_bytes)


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
