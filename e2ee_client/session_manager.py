"""
Session Manager: X3DH + Double Ratchet sessions with individual peers.

Encrypts outgoing direct messages and decrypts incoming ones, establishing
sessions on first contact and keeping the ratchet state in the key store.
Every state change for a peer happens under that peer's lock and in a single
store transaction, so a failed call leaves the stored session untouched.
"""

import logging
from typing import Dict, Optional, Set, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from e2ee_crypto.double_ratchet import DoubleRatchet
from e2ee_crypto.identity import safety_number
from e2ee_crypto.primitives import CryptoError, constant_time_compare
from e2ee_crypto.x3dh import OneTimePreKey, SignedPreKey, initiate, respond

from .api import KeyServer
from .errors import E2EEError, EnvelopeError, NoSession, PrekeyNotFound
from .events import EventEmitter, IdentityKeyChanged
from .key_manager import KeyManager
from .locks import KeyedLock, OperationGate
from .store import (
    DECRYPTED_MESSAGES,
    ONE_TIME_PREKEYS,
    PEER_IDENTITIES,
    SESSIONS,
    SIGNED_PREKEYS,
    KeyStore,
    KeyStoreTransaction,
)
from .wire import WireMessage, X3DHHeader, parse_wire_message

logger = logging.getLogger(__name__)


def fallback_text(data: bytes) -> str:
    """Legacy/plaintext content is shown as its UTF-8 decoding"""
    return data.decode('utf-8', errors='replace')


def session_record(ratchet: DoubleRatchet, handshake: str) -> Dict:
    """Stored form of a session: ratchet state plus the ephemeral key of the X3DH that created it"""
    return {'ratchet': ratchet.export_state(), 'handshake': handshake}


class SessionManager:
    """
    Pairwise encryption with other users.

    Usage::

        wire = await sessions.encrypt_for_peer("bob", "hi")
        text = await sessions.decrypt_from_peer("alice", wire)
    """

    def __init__(self, store: KeyStore, server: KeyServer, key_manager: KeyManager,
                 events: Optional[EventEmitter] = None, gate: Optional[OperationGate] = None):
        self.store = store
        self.server = server
        self.key_manager = key_manager
        self.events = events or EventEmitter()
        self.gate = gate or OperationGate()
        self._peer_locks = KeyedLock()
        self._failing_peers: Set[str] = set()

    async def has_session(self, peer_id: str) -> bool:
        """Check if a Double Ratchet session exists for a peer"""
        return await self.store.get(SESSIONS, peer_id) is not None

    async def delete_session(self, peer_id: str):
        """Delete a session so the next message re-keys with a fresh handshake"""
        async with self.gate.operation(), self._peer_locks.hold(peer_id):
            await self.store.delete(SESSIONS, peer_id)
        logger.info("Deleted session with %s", peer_id)

    async def _record_peer_identity(self, tx: KeyStoreTransaction, peer_id: str, identity_key: bytes):
        """Trust on first use; a changed key is reported before it replaces the old one"""
        stored = await tx.get(PEER_IDENTITIES, peer_id)
        if stored is not None:
            previous = bytes.fromhex(stored)
            if constant_time_compare(previous, identity_key):
                return
            logger.warning("Identity key of %s changed", peer_id)
            self.events.emit(IdentityKeyChanged(peer_id=peer_id, previous_key=previous, new_key=identity_key))
        await tx.put(PEER_IDENTITIES, peer_id, identity_key.hex())

    async def _initiate(self, peer_id: str) -> Tuple[DoubleRatchet, X3DHHeader, bytes]:
        """Run X3DH against the peer's published bundle"""
        identity_private = await self.key_manager.get_signing_key()
        our_identity_key = await self.key_manager.get_verifying_key()
        bundle = await self.server.get_key_bundle(peer_id)

        result = initiate(identity_private, bundle)
        ratchet = DoubleRatchet.initiator(result.shared_key, bundle.signed_pre_key, result.associated_data)

        header = X3DHHeader(
            identity_key=our_identity_key,
            ephemeral_key=result.ephemeral_public,
            signed_prekey_id=bundle.signed_pre_key_id,
            one_time_prekey_id=bundle.one_time_pre_key_id if bundle.one_time_pre_key is not None else None,
        )
        logger.info("Established session with %s (signed prekey %d, one-time prekey %s)",
                    peer_id, bundle.signed_pre_key_id, header.one_time_prekey_id)
        return ratchet, header, bundle.identity_key

    async def encrypt_for_peer(self, peer_id: str, plaintext: str) -> bytes:
        """
        Encrypt a message for a peer, performing X3DH first if needed.

        Args:
            peer_id: Recipient user id
            plaintext: Message text

        Returns:
            Serialized WireMessage; carries an X3DH header only when this
            call created the session

        Raises:
            NotRegistered: If this device has no identity key
            KeyServerError: If the peer's bundle cannot be fetched
            CryptoError: If the bundle's signed prekey signature is invalid
        """
        async with self.gate.operation(), self._peer_locks.hold(peer_id):
            record = await self.store.get(SESSIONS, peer_id)

            if record is not None:
                ratchet = DoubleRatchet.import_state(record['ratchet'])
                encrypted = ratchet.encrypt(plaintext.encode())
                await self.store.put(SESSIONS, peer_id, session_record(ratchet, record['handshake']))
                return WireMessage.from_encrypted(encrypted).to_bytes()

            ratchet, x3dh_header, peer_identity = await self._initiate(peer_id)
            encrypted = ratchet.encrypt(plaintext.encode())

            async with self.store.transaction() as tx:
                await self._record_peer_identity(tx, peer_id, peer_identity)
                await tx.put(SESSIONS, peer_id, session_record(ratchet, x3dh_header.ephemeral_key.hex()))

            return WireMessage.from_encrypted(encrypted, x3dh_header).to_bytes()

    async def _respond(self, tx: KeyStoreTransaction, peer_id: str, message: WireMessage,
                       identity_private: Ed25519PrivateKey, existing: Optional[Dict]) -> bytes:
        """X3DH response plus first ratchet step, inside the caller's transaction"""
        x3dh = message.x3dh

        signed = await tx.get(SIGNED_PREKEYS, x3dh.signed_prekey_id)
        if signed is None:
            raise PrekeyNotFound(x3dh.signed_prekey_id, kind="signed")
        signed_prekey = SignedPreKey.from_dict(signed)

        one_time_private = None
        one_time_missing = False
        if x3dh.one_time_prekey_id is not None:
            one_time = await tx.take(ONE_TIME_PREKEYS, x3dh.one_time_prekey_id)
            if one_time is None:
                logger.warning("One-time prekey %d referenced by %s is not available",
                               x3dh.one_time_prekey_id, peer_id)
                one_time_missing = True
            else:
                one_time_private = OneTimePreKey.from_dict(one_time).private_key

        result = respond(identity_private, signed_prekey.private_key, one_time_private,
                         x3dh.identity_key, x3dh.ephemeral_key)
        ratchet = DoubleRatchet.responder(result.shared_key, signed_prekey.private_key, result.associated_data)
        try:
            plaintext = ratchet.decrypt(message.encrypted_message())
        except CryptoError as e:
            if one_time_missing:
                raise PrekeyNotFound(x3dh.one_time_prekey_id, kind="one-time") from e
            raise

        if existing is not None:
            # A different handshake: simultaneous initiation or a re-key by the peer
            logger.info("Replacing existing session with %s after a new incoming handshake", peer_id)

        await self._record_peer_identity(tx, peer_id, x3dh.identity_key)
        await tx.put(SESSIONS, peer_id, session_record(ratchet, x3dh.ephemeral_key.hex()))
        return plaintext

    async def decrypt_from_peer(self, peer_id: str, data: bytes) -> str:
        """
        Decrypt a WireMessage from a peer.

        Args:
            peer_id: Sender user id
            data: Serialized WireMessage

        Returns:
            Decrypted message text

        Raises:
            UnsupportedVersion / MalformedEnvelope: If data is not a pairwise envelope
            NoSession: If there is no session and no X3DH header
            PrekeyNotFound: If the referenced signed (or consumed one-time) prekey is gone
            CryptoError: If the message does not authenticate or is a replay
        """
        message = parse_wire_message(data)

        async with self.gate.operation(), self._peer_locks.hold(peer_id):
            identity_private = None
            if message.x3dh is not None:
                identity_private = await self.key_manager.get_signing_key()

            async with self.store.transaction() as tx:
                record = await tx.get(SESSIONS, peer_id)
                # A handshake we already completed continues on the existing ratchet
                new_handshake = message.x3dh is not None and (
                    record is None or record['handshake'] != message.x3dh.ephemeral_key.hex()
                )
                if new_handshake:
                    plaintext = await self._respond(tx, peer_id, message, identity_private, record)
                else:
                    if record is None:
                        raise NoSession(peer_id)
                    ratchet = DoubleRatchet.import_state(record['ratchet'])
                    plaintext = ratchet.decrypt(message.encrypted_message())
                    await tx.put(SESSIONS, peer_id, session_record(ratchet, record['handshake']))

        return plaintext.decode('utf-8', errors='replace')

    async def cache_decrypted(self, message_id: str, plaintext: str, channel_id: Optional[str] = None):
        """Remember a message's plaintext, e.g. our own outgoing messages"""
        await self.store.put_decrypted(message_id, plaintext, channel_id)

    async def clear_decrypted_cache(self):
        await self.store.clear_collection(DECRYPTED_MESSAGES)

    async def decrypt_or_fallback(self, peer_id: Optional[str], data: bytes,
                                  message_id: Optional[str] = None,
                                  channel_id: Optional[str] = None) -> str:
        """
        Decrypt a direct message, accepting legacy plaintext.

        Bytes that are not a pairwise envelope are returned as UTF-8 text.
        An envelope that is ours but fails to decrypt raises its typed error
        (logged once per peer until the next success).

        Args:
            peer_id: Sender user id (None outside direct-message channels)
            data: Message bytes from the transport
            message_id: Enables the decrypted-message cache when given
            channel_id: Stored alongside cached plaintext
        """
        if peer_id is None:
            return fallback_text(data)

        if message_id is not None:
            cached = await self.store.get_decrypted(message_id)
            if cached is not None:
                return cached

        try:
            plaintext = await self.decrypt_from_peer(peer_id, data)
        except EnvelopeError:
            return fallback_text(data)
        except (E2EEError, CryptoError):
            if peer_id not in self._failing_peers:
                self._failing_peers.add(peer_id)
                logger.exception("Failed to decrypt message from %s", peer_id)
            raise

        self._failing_peers.discard(peer_id)
        if message_id is not None:
            await self.cache_decrypted(message_id, plaintext, channel_id)
        return plaintext

    async def safety_number(self, peer_id: str) -> Optional[str]:
        """Safety number for out-of-band verification, None before the first handshake"""
        stored = await self.store.get(PEER_IDENTITIES, peer_id)
        if stored is None:
            return None
        return safety_number(await self.key_manager.get_verifying_key(), bytes.fromhex(stored))
