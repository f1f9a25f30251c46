"""
Local key store for the E2E engine.

Keeps identity keys, prekeys, per-peer ratchet sessions, peer identities,
sender key chains and the decrypted-message cache in one SQLite file.
Values are JSON; when a passphrase is given they are additionally encrypted
with a key derived from it, bound to their (collection, key) slot.

Every operation runs inside a transaction, and a transaction holds the store
lock for its whole duration, so a multi-step operation (e.g. "read a one-time
prekey and delete it") is atomic with respect to every other caller.
"""

import asyncio
import json
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from e2ee_crypto.primitives import derive_storage_key, generate_nonce, NONCE_SIZE

from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

IDENTITY = "identity"
SIGNED_PREKEYS = "signed_prekeys"
ONE_TIME_PREKEYS = "one_time_prekeys"
SESSIONS = "sessions"
PEER_IDENTITIES = "peer_identities"
SENDER_KEYS = "sender_keys"
RECEIVER_KEYS = "receiver_keys"
DECRYPTED_MESSAGES = "decrypted_messages"
SETTINGS = "settings"

# Collections whose key is a field of the stored value
KEY_FIELDS: Dict[str, str] = {
    SIGNED_PREKEYS: "key_id",
    ONE_TIME_PREKEYS: "key_id",
    DECRYPTED_MESSAGES: "message_id",
}

_CANARY = b"e2ee-key-store"


def composite_key(*parts: str) -> str:
    """Key built from several ids; unambiguous whatever characters the ids contain"""
    return json.dumps(list(parts))


def composite_prefix(*parts: str) -> str:
    """Prefix matching every composite_key that starts with the given ids"""
    return json.dumps(list(parts))[:-1] + ", "


class KeyStoreTransaction:
    """Operations available inside KeyStore.transaction()"""

    def __init__(self, store: 'KeyStore', db: aiosqlite.Connection):
        self._store = store
        self._db = db

    async def _execute(self, sql: str, params: Iterable = ()) -> aiosqlite.Cursor:
        try:
            return await self._db.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Key store operation failed: {e}")

    async def get(self, collection: str, key: Any) -> Optional[Any]:
        key = str(key)
        cursor = await self._execute(
            "SELECT value FROM entries WHERE collection = ? AND key = ?", (collection, key)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._store._decode(collection, key, row[0])

    async def put(self, collection: str, key: Any, value: Any):
        key = str(key)
        await self._execute(
            "INSERT OR REPLACE INTO entries (collection, key, value, updated_at) VALUES (?, ?, ?, ?)",
            (collection, key, self._store._encode(collection, key, value),
             datetime.now(timezone.utc).isoformat())
        )

    async def put_record(self, collection: str, value: Dict):
        """Store a value under the key it carries itself"""
        await self.put(collection, value[KEY_FIELDS[collection]], value)

    async def put_records(self, collection: str, values: Iterable[Dict]):
        for value in values:
            await self.put_record(collection, value)

    async def delete(self, collection: str, key: Any) -> bool:
        cursor = await self._execute(
            "DELETE FROM entries WHERE collection = ? AND key = ?", (collection, str(key))
        )
        return cursor.rowcount > 0

    async def take(self, collection: str, key: Any) -> Optional[Any]:
        """Read a value and delete it in the same transaction"""
        value = await self.get(collection, key)
        if value is not None:
            await self.delete(collection, key)
        return value

    async def keys(self, collection: str, prefix: Optional[str] = None) -> List[str]:
        if prefix is None:
            cursor = await self._execute(
                "SELECT key FROM entries WHERE collection = ? ORDER BY key", (collection,)
            )
        else:
            cursor = await self._execute(
                "SELECT key FROM entries WHERE collection = ? AND substr(key, 1, ?) = ? ORDER BY key",
                (collection, len(prefix), prefix)
            )
        return [row[0] for row in await cursor.fetchall()]

    async def delete_prefix(self, collection: str, prefix: str) -> int:
        cursor = await self._execute(
            "DELETE FROM entries WHERE collection = ? AND substr(key, 1, ?) = ?",
            (collection, len(prefix), prefix)
        )
        return cursor.rowcount

    async def max_key(self, collection: str) -> int:
        """Largest numeric key in a collection, 0 when empty"""
        cursor = await self._execute(
            "SELECT MAX(CAST(key AS INTEGER)) FROM entries WHERE collection = ?", (collection,)
        )
        row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else 0

    async def count(self, collection: str) -> int:
        cursor = await self._execute(
            "SELECT COUNT(*) FROM entries WHERE collection = ?", (collection,)
        )
        row = await cursor.fetchone()
        return row[0]

    async def clear_collection(self, collection: str):
        await self._execute("DELETE FROM entries WHERE collection = ?", (collection,))

    async def clear_entries(self):
        """Delete every entry of every collection"""
        await self._execute("DELETE FROM entries")


class KeyStore:
    """
    Transactional key/value store backed by SQLite.

    Usage::

        store = KeyStore("client_data/alice.db", passphrase="...")
        await store.open()
        async with store.transaction() as tx:
            otp = await tx.take(ONE_TIME_PREKEYS, 17)
    """

    def __init__(self, db_path: str = ":memory:", passphrase: Optional[str] = None):
        """
        Initialize the key store.

        Args:
            db_path: SQLite file path, or ":memory:"
            passphrase: Encrypts stored values at rest when given
        """
        self.db_path = db_path
        self.passphrase = passphrase
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.db is not None

    async def _connect(self) -> aiosqlite.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self.db_path, isolation_level=None)
        try:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value BLOB NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, key)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL
                )
            """)
        except BaseException:
            await db.close()
            raise
        return db

    async def _unlock(self, db: aiosqlite.Connection) -> Optional[bytes]:
        """Derive the at-rest key, creating salt and canary on first use"""
        if not self.passphrase:
            return None

        cursor = await db.execute("SELECT key, value FROM metadata WHERE key IN ('salt', 'canary')")
        meta = {row[0]: row[1] for row in await cursor.fetchall()}

        if 'salt' not in meta:
            salt = os.urandom(16)
            key = derive_storage_key(self.passphrase, salt)
            nonce = generate_nonce()
            canary = nonce + AESGCM(key).encrypt(nonce, _CANARY, b"canary")
            await db.execute("INSERT INTO metadata (key, value) VALUES ('salt', ?)", (salt,))
            await db.execute("INSERT INTO metadata (key, value) VALUES ('canary', ?)", (canary,))
            return key

        key = derive_storage_key(self.passphrase, meta['salt'])
        canary = meta.get('canary', b"")
        try:
            AESGCM(key).decrypt(canary[:NONCE_SIZE], canary[NONCE_SIZE:], b"canary")
        except (InvalidTag, ValueError):
            raise StorageUnavailable("Key store passphrase is incorrect")
        return key

    async def open(self):
        """
        Open the store. Safe to call when already open.

        Raises:
            StorageUnavailable: If the database cannot be opened or unlocked;
                no handle is kept, so the call can simply be retried
        """
        async with self._lock:
            if self.db is not None:
                return
            db = None
            try:
                db = await self._connect()
                encryption_key = await self._unlock(db)
            except (sqlite3.Error, OSError, StorageUnavailable) as e:
                if db is not None:
                    await db.close()
                if isinstance(e, StorageUnavailable):
                    raise
                raise StorageUnavailable(f"Cannot open key store at {self.db_path}: {e}")
            self.db = db
            self.encryption_key = encryption_key

    async def close(self):
        """Close database connection"""
        async with self._lock:
            if self.db is not None:
                await self.db.close()
                self.db = None
                self.encryption_key = None

    def _encode(self, collection: str, key: str, value: Any) -> bytes:
        data = json.dumps(value).encode()
        if self.encryption_key is None:
            return data
        nonce = generate_nonce()
        aad = f"{collection}:{key}".encode()
        return nonce + AESGCM(self.encryption_key).encrypt(nonce, data, aad)

    def _decode(self, collection: str, key: str, blob: bytes) -> Any:
        data = blob
        if self.encryption_key is not None:
            aad = f"{collection}:{key}".encode()
            try:
                data = AESGCM(self.encryption_key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], aad)
            except (InvalidTag, ValueError):
                raise StorageUnavailable(f"Stored value {collection}/{key} failed to decrypt")
        return json.loads(data)

    @asynccontextmanager
    async def transaction(self):
        """
        Run several operations atomically.

        Commits when the block exits normally, rolls back if it raises.
        """
        async with self._lock:
            if self.db is None:
                raise StorageUnavailable("Key store is not open")
            db = self.db
            try:
                await db.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageUnavailable(f"Cannot start key store transaction: {e}")
            try:
                yield KeyStoreTransaction(self, db)
            except BaseException:
                try:
                    await db.execute("ROLLBACK")
                except sqlite3.Error:
                    logger.exception("Key store rollback failed")
                raise
            try:
                await db.execute("COMMIT")
            except sqlite3.Error as e:
                await db.execute("ROLLBACK")
                raise StorageUnavailable(f"Key store commit failed: {e}")

    async def get(self, collection: str, key: Any) -> Optional[Any]:
        async with self.transaction() as tx:
            return await tx.get(collection, key)

    async def put(self, collection: str, key: Any, value: Any):
        async with self.transaction() as tx:
            await tx.put(collection, key, value)

    async def put_record(self, collection: str, value: Dict):
        async with self.transaction() as tx:
            await tx.put_record(collection, value)

    async def put_records(self, collection: str, values: Iterable[Dict]):
        async with self.transaction() as tx:
            await tx.put_records(collection, values)

    async def delete(self, collection: str, key: Any) -> bool:
        async with self.transaction() as tx:
            return await tx.delete(collection, key)

    async def take(self, collection: str, key: Any) -> Optional[Any]:
        async with self.transaction() as tx:
            return await tx.take(collection, key)

    async def keys(self, collection: str, prefix: Optional[str] = None) -> List[str]:
        async with self.transaction() as tx:
            return await tx.keys(collection, prefix)

    async def max_key(self, collection: str) -> int:
        async with self.transaction() as tx:
            return await tx.max_key(collection)

    async def count(self, collection: str) -> int:
        async with self.transaction() as tx:
            return await tx.count(collection)

    async def clear_collection(self, collection: str):
        async with self.transaction() as tx:
            await tx.clear_collection(collection)

    async def get_decrypted(self, message_id: str) -> Optional[str]:
        entry = await self.get(DECRYPTED_MESSAGES, message_id)
        return entry['plaintext'] if entry is not None else None

    async def put_decrypted(self, message_id: str, plaintext: str, channel_id: Optional[str] = None):
        await self.put_record(DECRYPTED_MESSAGES, {
            'message_id': message_id,
            'channel_id': channel_id,
            'plaintext': plaintext
        })

    async def clear_all(self):
        """
        Delete every stored entry in a single transaction.

        Works on a closed store too (the file is opened just for the wipe)
        and is idempotent. The passphrase salt is kept.
        """
        async with self._lock:
            if self.db is not None:
                db, transient = self.db, False
            elif self.db_path == ":memory:" or not Path(self.db_path).exists():
                return
            else:
                try:
                    db, transient = await self._connect(), True
                except (sqlite3.Error, OSError) as e:
                    raise StorageUnavailable(f"Cannot open key store for wipe: {e}")
            try:
                await db.execute("BEGIN IMMEDIATE")
                await db.execute("DELETE FROM entries")
                await db.execute("COMMIT")
            except sqlite3.Error as e:
                if db.in_transaction:
                    await db.execute("ROLLBACK")
                raise StorageUnavailable(f"Key store wipe failed: {e}")
            finally:
                if transient:
                    await db.close()
        logger.info("Key store wiped")
