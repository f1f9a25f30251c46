"""
CryptoContext: one device's complete E2E engine.

Owns the key store, the key server client and the three managers, and gives
them a shared lifecycle::

    async with CryptoContext(E2EEConfig.from_env(user_id="alice"), token=token) as ctx:
        await ctx.keys.ensure_keys_registered()
        wire = await ctx.sessions.encrypt_for_peer("bob", "hi")
        ...
        await ctx.wipe()  # logout

Several contexts can coexist in one process (e.g. one per simulated device
in tests); nothing here is module-level state.
"""

import logging
from typing import Callable, Optional

from .api import KeyServer, KeyServerClient
from .config import E2EEConfig
from .events import EventEmitter
from .group_sessions import GroupSessionManager
from .key_manager import KeyManager
from .locks import OperationGate
from .session_manager import SessionManager
from .store import KeyStore

logger = logging.getLogger(__name__)


class CryptoContext:
    """
    Owns all crypto state of one local device.
    """

    def __init__(self, config: Optional[E2EEConfig] = None, server: Optional[KeyServer] = None,
                 store: Optional[KeyStore] = None, token: Optional[str] = None):
        """
        Initialize the context.

        Args:
            config: Engine settings (defaults to E2EEConfig.from_env())
            server: Key server collaborator; an HTTP client is created when omitted
            store: Key store; built from config.db_path when omitted
            token: Bearer token for the HTTP key server client
        """
        self.config = config or E2EEConfig.from_env()
        self._owns_server = server is None
        self.server = server or KeyServerClient(
            self.config.server_url, token=token, timeout=self.config.request_timeout
        )
        self.store = store or KeyStore(self.config.db_path, self.config.storage_passphrase)
        self.events = EventEmitter()
        self.gate = OperationGate()

        self.keys = KeyManager(self.store, self.server, self.config, self.gate)
        self.sessions = SessionManager(self.store, self.server, self.keys, self.events, self.gate)
        self.groups = GroupSessionManager(self.store, self.server, self.config, self.gate)

    async def open(self):
        """Open the key store; raises StorageUnavailable and can simply be retried"""
        await self.store.open()

    async def close(self):
        """Wait for running operations, then release the store and HTTP client"""
        async with self.gate.exclusive():
            await self.store.close()
        if self._owns_server:
            await self.server.aclose()

    async def wipe(self):
        """
        Delete all local crypto state (logout).

        Operations already running finish first; new ones wait until the
        wipe is done.
        """
        async with self.gate.exclusive():
            await self.store.clear_all()
        logger.info("Wiped local crypto state")

    def subscribe(self, listener: Callable[[object], None]) -> Callable[[], None]:
        """Receive security events such as IdentityKeyChanged"""
        return self.events.subscribe(listener)

    async def decrypt_message(self, channel_id: str, sender_id: str, data: bytes,
                              message_id: Optional[str] = None, peer_id: Optional[str] = None,
                              is_dm: bool = False) -> str:
        """
        Decrypt message content from any channel.

        Direct-message content goes through the pairwise session, keyed by
        peer_id when given (own messages are keyed by the other party);
        anything else through the channel's sender keys.
        """
        if is_dm:
            peer = peer_id if peer_id is not None else sender_id
            return await self.sessions.decrypt_or_fallback(peer, data, message_id, channel_id)
        return await self.groups.decrypt_group_message(channel_id, sender_id, data, message_id)

    async def __aenter__(self) -> 'CryptoContext':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
