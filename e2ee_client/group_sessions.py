"""
Group Session Manager: Sender Key encryption for group channels.

Each device owns one send chain per channel. Its distribution is uploaded to
the key server before the chain is ever used, and members derive a receive
chain per (channel, sender) from it. All state for a channel is changed under
that channel's lock, so a rotation never interleaves with a send or receive.
"""

import logging
from typing import Dict, Optional, Set, Tuple, Union

from e2ee_crypto.primitives import CryptoError
from e2ee_crypto.sender_keys import ReceiverKeyState, SenderKeyDistribution, SenderKeyState

from .api import KeyServer
from .config import E2EEConfig
from .errors import E2EEError, EnvelopeError, KeyServerError, NoSenderKey
from .locks import KeyedLock, OperationGate
from .session_manager import fallback_text
from .store import RECEIVER_KEYS, SENDER_KEYS, KeyStore, composite_key, composite_prefix
from .wire import EnvelopeKind, SenderKeyWireMessage, classify, parse_sender_key_message

logger = logging.getLogger(__name__)


class GroupSessionManager:
    """
    Sender Key sessions, one send chain per channel.
    """

    def __init__(self, store: KeyStore, server: KeyServer, config: E2EEConfig,
                 gate: Optional[OperationGate] = None):
        self.store = store
        self.server = server
        self.config = config
        self.gate = gate or OperationGate()
        self._channel_locks = KeyedLock()
        self._failing_senders: Set[Tuple[str, str]] = set()

    async def has_sender_key(self, channel_id: str) -> bool:
        """Check if we already have a send chain for a channel"""
        return await self.store.get(SENDER_KEYS, channel_id) is not None

    async def encrypt_for_group(self, channel_id: str, plaintext: str) -> bytes:
        """
        Encrypt a message for every member of a channel.

        A new send chain is only kept once its distribution has been uploaded.

        Raises:
            UploadFailed: If the distribution upload failed; nothing was stored
        """
        if not self.config.user_id:
            raise E2EEError("user_id must be configured to send group messages")

        async with self.gate.operation(), self._channel_locks.hold(channel_id):
            state = await self.store.get(SENDER_KEYS, channel_id)
            if state is not None:
                sender_key = SenderKeyState.import_state(state)
            else:
                sender_key = SenderKeyState.generate(self.config.user_id.encode())
                await self.server.upload_sender_key_distribution(
                    channel_id, sender_key.chain_id, sender_key.distribution().to_dict()
                )
                logger.info("Created sender key chain %d for channel %s", sender_key.chain_id, channel_id)

            message = sender_key.encrypt(plaintext.encode())
            await self.store.put(SENDER_KEYS, channel_id, sender_key.export_state())

        return SenderKeyWireMessage.from_message(message).to_bytes()

    async def _fetch_receiver(self, channel_id: str, sender_id: str, chain_id: int) -> ReceiverKeyState:
        """Derive a receive chain from the sender's distribution on the server"""
        records = await self.server.get_sender_key_distributions(channel_id)
        record = next((r for r in records if r.user_id == sender_id), None)
        if record is None:
            raise NoSenderKey(channel_id, sender_id)

        try:
            distribution = SenderKeyDistribution.from_dict(record.distribution)
        except (KeyError, TypeError, ValueError) as e:
            raise KeyServerError(f"Malformed sender key distribution for {sender_id} in {channel_id}: {e}")
        if distribution.chain_id != chain_id:
            logger.warning("Server holds chain %d for %s in %s, message uses chain %d",
                           distribution.chain_id, sender_id, channel_id, chain_id)
            raise NoSenderKey(channel_id, sender_id)
        return ReceiverKeyState.from_distribution(distribution)

    async def _decrypt(self, channel_id: str, sender_id: str, wire: SenderKeyWireMessage) -> str:
        message = wire.sender_key_message()
        key = composite_key(channel_id, sender_id)

        async with self.gate.operation(), self._channel_locks.hold(channel_id):
            state = await self.store.get(RECEIVER_KEYS, key)
            receiver = ReceiverKeyState.import_state(state) if state is not None else None

            if receiver is None or receiver.chain_id != message.chain_id:
                receiver = await self._fetch_receiver(channel_id, sender_id, message.chain_id)

            plaintext = receiver.decrypt(message)
            await self.store.put(RECEIVER_KEYS, key, receiver.export_state())

        return plaintext.decode('utf-8', errors='replace')

    async def decrypt_group_message(self, channel_id: str, sender_id: str, data: bytes,
                                    message_id: Optional[str] = None) -> str:
        """
        Decrypt a group message, accepting legacy plaintext.

        Args:
            channel_id: Channel the message was posted in
            sender_id: User id of the sender
            data: Message bytes from the transport
            message_id: Enables the decrypted-message cache when given

        Raises:
            NoSenderKey: If no usable distribution for the sender exists
            CryptoError: If the message does not authenticate or was already decrypted
        """
        if message_id is not None:
            cached = await self.store.get_decrypted(message_id)
            if cached is not None:
                return cached

        if classify(data) is not EnvelopeKind.GROUP:
            return fallback_text(data)
        try:
            wire = parse_sender_key_message(data)
        except EnvelopeError:
            return fallback_text(data)

        try:
            plaintext = await self._decrypt(channel_id, sender_id, wire)
        except (E2EEError, CryptoError):
            if (channel_id, sender_id) not in self._failing_senders:
                self._failing_senders.add((channel_id, sender_id))
                logger.exception("Failed to decrypt group message from %s in %s", sender_id, channel_id)
            raise

        self._failing_senders.discard((channel_id, sender_id))
        if message_id is not None:
            await self.store.put_decrypted(message_id, plaintext, channel_id)
        return plaintext

    async def rotate_sender_keys(self, channel_id: str) -> int:
        """
        Forget our send chain and every receive chain for a channel.

        Call whenever a member leaves; the next send creates and distributes
        a fresh chain.

        Returns:
            Number of receive chains removed
        """
        async with self.gate.operation(), self._channel_locks.hold(channel_id):
            async with self.store.transaction() as tx:
                await tx.delete(SENDER_KEYS, channel_id)
                removed = await tx.delete_prefix(RECEIVER_KEYS, composite_prefix(channel_id))
        logger.info("Rotated sender keys for channel %s (%d receive chains dropped)", channel_id, removed)
        return removed

    async def process_sender_key_distribution(self, channel_id: str, sender_id: str,
                                              distribution: Union[SenderKeyDistribution, Dict]):
        """Store a receive chain for a sender, replacing any previous one"""
        if not isinstance(distribution, SenderKeyDistribution):
            distribution = SenderKeyDistribution.from_dict(distribution)
        receiver = ReceiverKeyState.from_distribution(distribution)

        async with self.gate.operation(), self._channel_locks.hold(channel_id):
            await self.store.put(RECEIVER_KEYS, composite_key(channel_id, sender_id), receiver.export_state())
