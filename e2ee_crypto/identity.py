"""
Identity key fingerprints and safety numbers for out-of-band verification.
"""

import hashlib


def fingerprint(identity_key: bytes) -> str:
    """
    Fingerprint of an identity public key.

    Args:
        identity_key: Raw Ed25519 public key

    Returns:
        Hex SHA-256 digest grouped in blocks of four, e.g. "ab12 cd34 ..."
    """
    digest = hashlib.sha256(identity_key).hexdigest()
    return " ".join(digest[i:i + 4] for i in range(0, len(digest), 4))


def safety_number(key_a: bytes, key_b: bytes) -> str:
    """
    Safety number for a pair of identity keys.

    The result does not depend on argument order, so both parties compute
    the same string.

    Returns:
        Eight space-separated 5-digit groups
    """
    first, second = sorted((key_a, key_b))
    digest = hashlib.sha256(first + second).digest()
    groups = []
    for i in range(0, len(digest), 4):
        n = int.from_bytes(digest[i:i + 4], "big")
        groups.append(f"{n % 100000:05d}")
    return " ".join(groups)
