"""
Asynchronous E2E encryption engine for the chat client.

Wraps the e2ee_crypto primitives with key management, persistent sessions,
group sender keys and the wire envelope format.
"""

from .config import E2EEConfig, KEY_VERSION
from .context import CryptoContext
from .errors import (
    E2EEError,
    NotRegistered,
    PrekeyNotFound,
    NoSession,
    NoSenderKey,
    StorageUnavailable,
    EnvelopeError,
    UnsupportedVersion,
    MalformedEnvelope,
    KeyServerError,
    UploadFailed,
)
from .events import IdentityKeyChanged
from .key_manager import KeyManager
from .session_manager import SessionManager
from .group_sessions import GroupSessionManager
from .store import KeyStore
from .api import KeyServer, KeyServerClient

__all__ = [
    'E2EEConfig',
    'KEY_VERSION',
    'CryptoContext',
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
    'IdentityKeyChanged',
    'KeyManager',
    'SessionManager',
    'GroupSessionManager',
    'KeyStore',
    'KeyServer',
    'KeyServerClient',
]
