"""
Error taxonomy of the E2E encryption engine.

Cryptographic failures (bad tag, bad signature, desynchronized or replayed
messages) are raised by the crypto layer as CryptoError and re-exported here.
"""

from typing import Optional

from e2ee_crypto.primitives import (
    CryptoError,
    DuplicateMessageError,
    TooManySkippedError,
    UnknownChainError,
)


class E2EEError(Exception):
    """Base exception for protocol engine errors"""
    pass


class NotRegistered(E2EEError):
    """No identity key exists on this device yet"""

    def __init__(self, message: str = "No identity key found - not registered?"):
        super().__init__(message)


class PrekeyNotFound(E2EEError):
    """A prekey referenced by an incoming handshake is not held locally"""

    def __init__(self, key_id: int, kind: str = "signed"):
        self.key_id = key_id
        self.kind = kind
        super().__init__(f"{kind.capitalize()} prekey {key_id} not found locally")


class NoSession(E2EEError):
    """Decrypt attempted with neither an existing session nor a handshake header"""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        super().__init__(f"No session found for peer {peer_id} and no X3DH header")


class NoSenderKey(E2EEError):
    """No known or fetchable sender key distribution for a group sender"""

    def __init__(self, channel_id: str, sender_id: str):
        self.channel_id = channel_id
        self.sender_id = sender_id
        super().__init__(f"No sender key for {sender_id} in channel {channel_id}")


class StorageUnavailable(E2EEError):
    """The local key store could not be opened or accessed"""
    pass


class EnvelopeError(E2EEError):
    """The bytes are not an envelope this engine can process"""
    pass


class UnsupportedVersion(EnvelopeError):
    """Envelope version not recognized"""

    def __init__(self, version):
        self.version = version
        super().__init__(f"Unsupported wire message version: {version!r}")


class MalformedEnvelope(EnvelopeError):
    """Envelope is not structurally valid"""
    pass


class KeyServerError(E2EEError):
    """A request to the key server failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UploadFailed(KeyServerError):
    """Uploading keys or a sender key distribution failed"""
    pass


__all__ = [
    'E2EEError',
    'NotRegistered',
    'PrekeyNotFound',
    'NoSession',
    'NoSenderKey',
    'StorageUnavailable',
    'EnvelopeError',
    'UnsupportedVersion',
    'MalformedEnvelope',
    'KeyServerError',
    'UploadFailed',
    'CryptoError',
    'DuplicateMessageError',
    'TooManySkippedError',
    'UnknownChainError',
]
