"""
Tests for the SQLite key store: collections, transactions, at-rest encryption
and wipe behaviour.
"""

import asyncio

import pytest

from e2ee_client.errors import StorageUnavailable
from e2ee_client.store import (
    DECRYPTED_MESSAGES,
    ONE_TIME_PREKEYS,
    RECEIVER_KEYS,
    SESSIONS,
    KeyStore,
    composite_key,
    composite_prefix,
)


@pytest.fixture
async def store(tmp_path):
    store = KeyStore(str(tmp_path / "keys.db"))
    await store.open()
    yield store
    await store.close()


async def test_get_put_delete(store):
    assert await store.get(SESSIONS, "bob") is None

    await store.put(SESSIONS, "bob", "ratchet-state")
    assert await store.get(SESSIONS, "bob") == "ratchet-state"

    await store.put(SESSIONS, "bob", "newer-state")
    assert await store.get(SESSIONS, "bob") == "newer-state"

    assert await store.delete(SESSIONS, "bob") is True
    assert await store.delete(SESSIONS, "bob") is False
    assert await store.get(SESSIONS, "bob") is None


async def test_intrinsic_keys(store):
    await store.put_records(ONE_TIME_PREKEYS, [
        {'key_id': 1, 'public_key': "aa"},
        {'key_id': 2, 'public_key': "bb"},
        {'key_id': 10, 'public_key': "cc"},
    ])

    assert (await store.get(ONE_TIME_PREKEYS, 2))['public_key'] == "bb"
    assert await store.count(ONE_TIME_PREKEYS) == 3
    # Numeric, not lexicographic
    assert await store.max_key(ONE_TIME_PREKEYS) == 10


async def test_max_key_empty_collection(store):
    assert await store.max_key(ONE_TIME_PREKEYS) == 0


async def test_take_consumes_once(store):
    await store.put_record(ONE_TIME_PREKEYS, {'key_id': 7, 'public_key': "aa"})

    assert (await store.take(ONE_TIME_PREKEYS, 7))['key_id'] == 7
    assert await store.take(ONE_TIME_PREKEYS, 7) is None


async def test_concurrent_take_has_single_winner(store):
    await store.put_record(ONE_TIME_PREKEYS, {'key_id': 3, 'public_key': "aa"})

    results = await asyncio.gather(*(store.take(ONE_TIME_PREKEYS, 3) for _ in range(5)))
    assert sum(r is not None for r in results) == 1


async def test_transaction_rolls_back_on_error(store):
    await store.put(SESSIONS, "bob", "original")

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.put(SESSIONS, "bob", "changed")
            await tx.delete(SESSIONS, "carol")
            raise RuntimeError("boom")

    assert await store.get(SESSIONS, "bob") == "original"


async def test_composite_prefix_is_exact(store):
    await store.put(RECEIVER_KEYS, composite_key("chan", "alice"), "a")
    await store.put(RECEIVER_KEYS, composite_key("chan", "bob"), "b")
    await store.put(RECEIVER_KEYS, composite_key("chan:2", "alice"), "c")
    await store.put(RECEIVER_KEYS, composite_key("channel", "alice"), "d")

    assert len(await store.keys(RECEIVER_KEYS, composite_prefix("chan"))) == 2

    async with store.transaction() as tx:
        assert await tx.delete_prefix(RECEIVER_KEYS, composite_prefix("chan")) == 2

    assert await store.get(RECEIVER_KEYS, composite_key("chan:2", "alice")) == "c"
    assert await store.get(RECEIVER_KEYS, composite_key("channel", "alice")) == "d"


async def test_decrypted_cache(store):
    assert await store.get_decrypted("m1") is None
    await store.put_decrypted("m1", "hello", "chan")
    assert await store.get_decrypted("m1") == "hello"
    assert (await store.get(DECRYPTED_MESSAGES, "m1"))['channel_id'] == "chan"

    await store.clear_collection(DECRYPTED_MESSAGES)
    assert await store.get_decrypted("m1") is None


async def test_values_survive_reopen(tmp_path):
    path = str(tmp_path / "keys.db")
    store = KeyStore(path)
    await store.open()
    await store.put(SESSIONS, "bob", {"root_key": "00"})
    await store.close()

    store = KeyStore(path)
    await store.open()
    assert await store.get(SESSIONS, "bob") == {"root_key": "00"}
    await store.close()


async def test_clear_all_is_idempotent(store):
    await store.put(SESSIONS, "bob", "state")
    await store.clear_all()
    await store.clear_all()
    assert await store.get(SESSIONS, "bob") is None


async def test_clear_all_before_open(tmp_path):
    path = str(tmp_path / "keys.db")

    # Never created
    await KeyStore(path).clear_all()

    store = KeyStore(path)
    await store.open()
    await store.put(SESSIONS, "bob", "state")
    await store.close()

    closed = KeyStore(path)
    await closed.clear_all()
    assert not closed.is_open

    await closed.open()
    assert await closed.get(SESSIONS, "bob") is None
    await closed.close()


async def test_operations_require_open(tmp_path):
    store = KeyStore(str(tmp_path / "keys.db"))
    with pytest.raises(StorageUnavailable):
        await store.get(SESSIONS, "bob")


async def test_open_failure_leaves_no_handle(tmp_path):
    # A directory where the database file should be
    path = tmp_path / "keys.db"
    path.mkdir()

    store = KeyStore(str(path))
    with pytest.raises(StorageUnavailable):
        await store.open()
    assert not store.is_open


async def test_encrypted_at_rest(tmp_path):
    path = str(tmp_path / "keys.db")
    store = KeyStore(path, passphrase="hunter2")
    await store.open()
    await store.put(SESSIONS, "bob", {"root_key": "very-secret-value"})
    await store.close()

    with open(path, "rb") as f:
        assert b"very-secret-value" not in f.read()

    store = KeyStore(path, passphrase="hunter2")
    await store.open()
    assert await store.get(SESSIONS, "bob") == {"root_key": "very-secret-value"}
    await store.close()


async def test_wrong_passphrase_fails_open(tmp_path):
    path = str(tmp_path / "keys.db")
    store = KeyStore(path, passphrase="hunter2")
    await store.open()
    await store.close()

    store = KeyStore(path, passphrase="wrong")
    with pytest.raises(StorageUnavailable):
        await store.open()
    assert not store.is_open
