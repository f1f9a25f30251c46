"""
Key Manager: owns the device's identity key, signed prekeys and one-time
prekey pool, and keeps the key server's copy of the public halves current.

Private material is always persisted before its public half is uploaded.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from e2ee_crypto.primitives import (
    generate_identity_keypair,
    serialize_identity_public_key,
    serialize_identity_private_key,
    deserialize_identity_private_key,
)
from e2ee_crypto.x3dh import SignedPreKey, generate_signed_prekey, generate_one_time_prekeys

from .api import KeyServer
from .config import E2EEConfig
from .errors import KeyServerError, NotRegistered
from .locks import OperationGate
from .store import IDENTITY, ONE_TIME_PREKEYS, SETTINGS, SIGNED_PREKEYS, KeyStore, KeyStoreTransaction

logger = logging.getLogger(__name__)

LOCAL_IDENTITY = "local"
KEY_VERSION_SETTING = "key_version"
LAST_OTP_ID_SETTING = "last_one_time_prekey_id"


@dataclass
class RegistrationKeys:
    """Public material to upload after registration keys were generated"""
    identity_key: bytes
    signed_prekey: Dict
    one_time_prekeys: List[Dict] = field(default_factory=list)


class KeyManager:
    """
    Manages the local key material of one device.
    """

    def __init__(self, store: KeyStore, server: KeyServer, config: E2EEConfig,
                 gate: Optional[OperationGate] = None):
        self.store = store
        self.server = server
        self.config = config
        self.gate = gate or OperationGate()
        self._register_lock = asyncio.Lock()
        self._replenish_lock = asyncio.Lock()

    async def _persist_registration(self, tx: KeyStoreTransaction, identity_private: Ed25519PrivateKey,
                                    signed_prekey: SignedPreKey, one_time_prekeys) -> RegistrationKeys:
        identity_public = serialize_identity_public_key(identity_private.public_key())
        await tx.put(IDENTITY, LOCAL_IDENTITY, {
            'private_key': serialize_identity_private_key(identity_private).hex(),
            'public_key': identity_public.hex()
        })
        await tx.put_record(SIGNED_PREKEYS, signed_prekey.to_dict())
        await tx.put_records(ONE_TIME_PREKEYS, [otp.to_dict() for otp in one_time_prekeys])
        if one_time_prekeys:
            await tx.put(SETTINGS, LAST_OTP_ID_SETTING, one_time_prekeys[-1].key_id)

        return RegistrationKeys(
            identity_key=identity_public,
            signed_prekey=signed_prekey.public_dict(),
            one_time_prekeys=[otp.public_dict() for otp in one_time_prekeys]
        )

    async def generate_registration_keys(self, replace_existing: bool = False) -> RegistrationKeys:
        """
        Generate identity key, signed prekey #1 and the initial one-time prekeys.

        Everything is stored locally before the public halves are returned.

        Args:
            replace_existing: Delete all other local crypto state in the same
                transaction (sessions do not survive a new identity)

        Returns:
            RegistrationKeys ready for upload
        """
        identity_private, _ = generate_identity_keypair()
        signed_prekey = generate_signed_prekey(identity_private, key_id=1)
        one_time_prekeys = generate_one_time_prekeys(1, self.config.initial_otp_count)

        async with self.store.transaction() as tx:
            if replace_existing:
                await tx.clear_entries()
            return await self._persist_registration(tx, identity_private, signed_prekey, one_time_prekeys)

    async def ensure_keys_registered(self) -> bool:
        """
        Make sure this device has registered keys of the current key version.

        Concurrent calls are serialized, so the server and the store always
        end up holding the same identity.

        Returns:
            True if keys were (re)generated and uploaded, False if already up to date

        Raises:
            UploadFailed: If the key server rejected the upload; the next call retries
        """
        async with self._register_lock:
            async with self.store.transaction() as tx:
                identity = await tx.get(IDENTITY, LOCAL_IDENTITY)
                version = await tx.get(SETTINGS, KEY_VERSION_SETTING)

            if identity is not None and version == self.config.key_version:
                logger.debug("Keys already registered (version %s)", version)
                return False

            if identity is None:
                logger.info("No identity key found, generating registration keys")
                keys = await self.generate_registration_keys()
            else:
                logger.info("Key version changed (%s -> %s), wiping local keys and re-registering",
                            version, self.config.key_version)
                async with self.gate.exclusive():
                    keys = await self.generate_registration_keys(replace_existing=True)

            await self.server.upload_identity_and_prekeys(
                keys.identity_key, keys.signed_prekey, keys.one_time_prekeys
            )
            await self.store.put(SETTINGS, KEY_VERSION_SETTING, self.config.key_version)
            logger.info("Registered identity key with %d one-time prekeys", len(keys.one_time_prekeys))
            return True

    async def replenish_prekeys(self) -> int:
        """
        Top up the server's one-time prekey pool when it runs low.

        Failures are logged, not raised; the next low-prekey signal retries.

        Returns:
            Number of one-time prekeys uploaded
        """
        async with self.gate.operation(), self._replenish_lock:
            if not await self.is_registered():
                logger.info("Skipping one-time prekey replenishment: no identity key")
                return 0

            try:
                remaining = await self.server.get_one_time_prekey_count()
            except KeyServerError as e:
                logger.warning("Could not read one-time prekey count: %s", e)
                return 0

            if remaining >= self.config.otp_replenish_threshold:
                return 0

            async with self.store.transaction() as tx:
                last_issued = await tx.get(SETTINGS, LAST_OTP_ID_SETTING) or 0
                start_id = max(await tx.max_key(ONE_TIME_PREKEYS), last_issued) + 1
                prekeys = generate_one_time_prekeys(start_id, self.config.otp_replenish_batch)
                await tx.put_records(ONE_TIME_PREKEYS, [otp.to_dict() for otp in prekeys])
                await tx.put(SETTINGS, LAST_OTP_ID_SETTING, prekeys[-1].key_id)

            try:
                await self.server.upload_one_time_prekeys([otp.public_dict() for otp in prekeys])
            except KeyServerError as e:
                logger.warning("Uploading %d one-time prekeys failed: %s", len(prekeys), e)
                return 0

            logger.info("Replenished one-time prekeys: %d remaining on server, uploaded %d (ids %d-%d)",
                        remaining, len(prekeys), prekeys[0].key_id, prekeys[-1].key_id)
            return len(prekeys)

    async def rotate_signed_prekey(self) -> int:
        """
        Generate and upload a new signed prekey.

        Older signed prekeys stay in the store so handshakes already in
        flight against them still complete.

        Returns:
            Id of the new signed prekey
        """
        async with self.gate.operation():
            identity_private = await self.get_signing_key()
            async with self.store.transaction() as tx:
                key_id = await tx.max_key(SIGNED_PREKEYS) + 1
                signed_prekey = generate_signed_prekey(identity_private, key_id)
                await tx.put_record(SIGNED_PREKEYS, signed_prekey.to_dict())

            await self.server.upload_signed_prekey(signed_prekey.public_dict())
        logger.info("Rotated signed prekey to id %d", key_id)
        return key_id

    async def _identity(self) -> Dict:
        identity = await self.store.get(IDENTITY, LOCAL_IDENTITY)
        if identity is None:
            raise NotRegistered()
        return identity

    async def get_signing_key(self) -> Ed25519PrivateKey:
        identity = await self._identity()
        return deserialize_identity_private_key(bytes.fromhex(identity['private_key']))

    async def get_verifying_key(self) -> bytes:
        identity = await self._identity()
        return bytes.fromhex(identity['public_key'])

    async def is_registered(self) -> bool:
        return await self.store.get(IDENTITY, LOCAL_IDENTITY) is not None
