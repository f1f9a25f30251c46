"""
Tests for CryptoContext lifecycle, the decrypt dispatcher and configuration.
"""

import asyncio

import pytest

from conftest import FakeKeyDirectory
from e2ee_client import CryptoContext, E2EEConfig, KEY_VERSION
from e2ee_client.api import KeyServerClient
from e2ee_client.errors import NotRegistered, StorageUnavailable


async def test_dm_dispatch(make_device):
    alice = await make_device("alice")
    bob = await make_device("bob")

    wire = await alice.sessions.encrypt_for_peer("bob", "hi")
    text = await bob.decrypt_message("dm-1", "alice", wire, message_id="m1", is_dm=True)
    assert text == "hi"
    assert await bob.store.get_decrypted("m1") == "hi"


async def test_dm_own_message_uses_peer_override(make_device):
    alice = await make_device("alice")
    await make_device("bob")

    wire = await alice.sessions.encrypt_for_peer("bob", "sent by me")
    await alice.sessions.cache_decrypted("m1", "sent by me", "dm-1")

    text = await alice.decrypt_message("dm-1", "alice", wire, message_id="m1", peer_id="bob", is_dm=True)
    assert text == "sent by me"


async def test_group_dispatch(make_device):
    alice = await make_device("alice")
    bob = await make_device("bob")

    wire = await alice.groups.encrypt_for_group("general", "hello group")
    assert await bob.decrypt_message("general", "alice", wire) == "hello group"
    assert await bob.decrypt_message("general", "alice", b"plain") == "plain"


async def test_wipe_removes_all_state(make_device):
    alice = await make_device("alice")
    await make_device("bob")
    await alice.sessions.encrypt_for_peer("bob", "hi")

    await alice.wipe()
    await alice.wipe()

    assert not await alice.sessions.has_session("bob")
    with pytest.raises(NotRegistered):
        await alice.keys.get_verifying_key()
    with pytest.raises(NotRegistered):
        await alice.sessions.encrypt_for_peer("bob", "after logout")


async def test_wipe_waits_for_running_operations(make_device):
    alice = await make_device("alice")
    order = []
    started = asyncio.Event()

    async def slow_operation():
        async with alice.gate.operation():
            order.append("operation started")
            started.set()
            await asyncio.sleep(0.05)
            order.append("operation finished")

    task = asyncio.create_task(slow_operation())
    await started.wait()
    await alice.wipe()
    order.append("wiped")
    await task

    assert order == ["operation started", "operation finished", "wiped"]


async def test_operations_wait_for_wipe(make_device):
    alice = await make_device("alice")
    await make_device("bob")

    async with alice.gate.exclusive():
        encrypt = asyncio.create_task(alice.sessions.encrypt_for_peer("bob", "hi"))
        await asyncio.sleep(0.01)
        assert not encrypt.done()
    assert await encrypt
    assert await alice.sessions.has_session("bob")


async def test_async_context_manager(tmp_path):
    directory = FakeKeyDirectory()
    config = E2EEConfig(db_path=str(tmp_path / "ctx.db"), user_id="alice", initial_otp_count=2)

    async with CryptoContext(config, server=directory.for_user("alice")) as ctx:
        assert ctx.store.is_open
        await ctx.keys.ensure_keys_registered()
    assert not ctx.store.is_open
    assert "alice" in directory.identities


async def test_default_server_is_http_client(tmp_path):
    ctx = CryptoContext(E2EEConfig(db_path=str(tmp_path / "ctx.db")), token="abc")
    assert isinstance(ctx.server, KeyServerClient)
    assert ctx.server.token == "abc"
    await ctx.open()
    await ctx.close()


async def test_open_failure_can_be_retried(tmp_path):
    blocker = tmp_path / "not-a-db"
    blocker.mkdir()
    ctx = CryptoContext(E2EEConfig(db_path=str(blocker)), server=FakeKeyDirectory().for_user("alice"))

    with pytest.raises(StorageUnavailable):
        await ctx.open()

    blocker.rmdir()
    await ctx.open()
    assert ctx.store.is_open
    await ctx.close()


def test_config_defaults(monkeypatch):
    for name in ("E2EE_SERVER_URL", "E2EE_DB_PATH", "E2EE_USER_ID", "E2EE_STORAGE_PASSPHRASE",
                 "E2EE_INITIAL_OTP_COUNT", "E2EE_OTP_REPLENISH_THRESHOLD", "E2EE_OTP_REPLENISH_BATCH",
                 "E2EE_REQUEST_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)

    config = E2EEConfig.from_env()
    assert config.server_url == "http://localhost:8000"
    assert config.key_version == KEY_VERSION == 2
    assert config.initial_otp_count == 100
    assert config.otp_replenish_threshold == 25
    assert config.otp_replenish_batch == 100
    assert config.storage_passphrase is None


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("E2EE_SERVER_URL", "https://chat.example")
    monkeypatch.setenv("E2EE_OTP_REPLENISH_THRESHOLD", "10")
    monkeypatch.setenv("E2EE_STORAGE_PASSPHRASE", "secret")

    config = E2EEConfig.from_env(user_id="alice")
    assert config.server_url == "https://chat.example"
    assert config.otp_replenish_threshold == 10
    assert config.storage_passphrase == "secret"
    assert config.user_id == "alice"


def test_config_rejects_malformed_numbers(monkeypatch):
    monkeypatch.setenv("E2EE_INITIAL_OTP_COUNT", "many")
    with pytest.raises(ValueError):
        E2EEConfig.from_env()
