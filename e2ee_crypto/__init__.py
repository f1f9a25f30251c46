"""
Cryptographic layer for end-to-end encrypted chat.

Implements Signal Protocol-inspired encryption with:
- X3DH (Extended Triple Diffie-Hellman) key agreement
- Double Ratchet algorithm for pairwise forward secrecy
- Sender Keys for group channels
- Password-derived keys for personal (note-to-self) storage
"""

from .primitives import (
    generate_dh_keypair,
    generate_identity_keypair,
    dh_exchange,
    encrypt_message,
    decrypt_message,
    CryptoError,
    DuplicateMessageError,
    TooManySkippedError,
    UnknownChainError,
)
from .x3dh import PreKeyBundle, SignedPreKey, OneTimePreKey, X3DHResult
from .double_ratchet import DoubleRatchet, EncryptedMessage, MessageHeader
from .sender_keys import SenderKeyDistribution, SenderKeyMessage, SenderKeyState, ReceiverKeyState
from .identity import fingerprint, safety_number
from .personal_key import derive_personal_key, personal_encrypt, personal_decrypt

__all__ = [
    'generate_dh_keypair',
    'generate_identity_keypair',
    'dh_exchange',
    'encrypt_message',
    'decrypt_message',
    'CryptoError',
    'DuplicateMessageError',
    'TooManySkippedError',
    'UnknownChainError',
    'PreKeyBundle',
    'SignedPreKey',
    'OneTimePreKey',
    'X3DHResult',
    'DoubleRatchet',
    'EncryptedMessage',
    'MessageHeader',
    'SenderKeyDistribution',
    'SenderKeyMessage',
    'SenderKeyState',
    'ReceiverKeyState',
    'fingerprint',
    'safety_number',
    'derive_personal_key',
    'personal_encrypt',
    'personal_decrypt',
]
