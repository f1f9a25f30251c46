"""
Shared pytest fixtures.

FakeKeyDirectory stands in for the chat server's key endpoints: every
simulated device talks to it through its own FakeKeyServer view, so
bundles, one-time prekeys and sender key distributions flow between
devices exactly as they would through the real server.
"""

import itertools
from typing import Dict, List, Optional, Set

import pytest

from e2ee_client import CryptoContext, E2EEConfig
from e2ee_client.api import SenderKeyDistributionRecord
from e2ee_client.errors import KeyServerError, UploadFailed
from e2ee_crypto.x3dh import PreKeyBundle


class FakeKeyDirectory:
    """In-memory server-side key state shared by all simulated devices"""

    def __init__(self):
        self.identities: Dict[str, bytes] = {}
        self.signed_prekeys: Dict[str, Dict] = {}
        self.one_time_prekeys: Dict[str, List[Dict]] = {}
        self.sender_keys: Dict[str, Dict[str, SenderKeyDistributionRecord]] = {}
        self.members: Dict[str, Set[str]] = {}
        self.fail_uploads = False
        self.bundle_requests: List[str] = []

    def for_user(self, user_id: str) -> 'FakeKeyServer':
        return FakeKeyServer(self, user_id)

    def set_members(self, channel_id: str, *user_ids: str):
        self.members[channel_id] = set(user_ids)

    def remove_member(self, channel_id: str, user_id: str):
        self.members[channel_id].discard(user_id)
        self.sender_keys.get(channel_id, {}).pop(user_id, None)

    def is_member(self, channel_id: str, user_id: str) -> bool:
        members = self.members.get(channel_id)
        return members is None or user_id in members


class FakeKeyServer:
    """KeyServer as seen by one logged-in user"""

    def __init__(self, directory: FakeKeyDirectory, user_id: str):
        self.directory = directory
        self.user_id = user_id

    def _check_upload(self):
        if self.directory.fail_uploads:
            raise UploadFailed("upload rejected", status_code=503)

    async def get_key_bundle(self, peer_id: str) -> PreKeyBundle:
        self.directory.bundle_requests.append(peer_id)
        if peer_id not in self.directory.identities:
            raise KeyServerError(f"No keys for {peer_id}", status_code=404)
        pool = self.directory.one_time_prekeys.get(peer_id, [])
        one_time = pool.pop(0) if pool else None
        return PreKeyBundle.from_dict({
            'identity_key': self.directory.identities[peer_id].hex(),
            'signed_prekey': self.directory.signed_prekeys[peer_id],
            'one_time_prekey': one_time,
        })

    async def upload_identity_and_prekeys(self, identity_key: bytes, signed_prekey: Dict,
                                          one_time_prekeys: List[Dict]):
        self._check_upload()
        self.directory.identities[self.user_id] = identity_key
        self.directory.signed_prekeys[self.user_id] = signed_prekey
        self.directory.one_time_prekeys[self.user_id] = list(one_time_prekeys)

    async def upload_signed_prekey(self, signed_prekey: Dict):
        self._check_upload()
        self.directory.signed_prekeys[self.user_id] = signed_prekey

    async def upload_one_time_prekeys(self, prekeys: List[Dict]):
        self._check_upload()
        self.directory.one_time_prekeys.setdefault(self.user_id, []).extend(prekeys)

    async def get_one_time_prekey_count(self) -> int:
        return len(self.directory.one_time_prekeys.get(self.user_id, []))

    async def upload_sender_key_distribution(self, channel_id: str, chain_id: int, distribution: Dict):
        self._check_upload()
        if not self.directory.is_member(channel_id, self.user_id):
            raise UploadFailed("not a member", status_code=403)
        self.directory.sender_keys.setdefault(channel_id, {})[self.user_id] = SenderKeyDistributionRecord(
            user_id=self.user_id, chain_id=chain_id, distribution=distribution
        )

    async def get_sender_key_distributions(self, channel_id: str) -> List[SenderKeyDistributionRecord]:
        if not self.directory.is_member(channel_id, self.user_id):
            return []
        records = self.directory.sender_keys.get(channel_id, {})
        return [r for user_id, r in records.items() if self.directory.is_member(channel_id, user_id)]


@pytest.fixture
def key_directory():
    return FakeKeyDirectory()


@pytest.fixture
async def make_device(tmp_path, key_directory):
    """
    Factory for registered CryptoContexts, one per simulated device.

    Each device gets its own SQLite file under tmp_path.
    """
    contexts: List[CryptoContext] = []
    counter = itertools.count()

    async def factory(user_id: str, register: bool = True, db_path: Optional[str] = None,
                      **overrides) -> CryptoContext:
        overrides.setdefault('initial_otp_count', 5)
        overrides.setdefault('otp_replenish_threshold', 3)
        overrides.setdefault('otp_replenish_batch', 5)
        config = E2EEConfig(
            db_path=db_path or str(tmp_path / f"{user_id}-{next(counter)}.db"),
            user_id=user_id,
            **overrides
        )
        ctx = CryptoContext(config, server=key_directory.for_user(user_id))
        await ctx.open()
        contexts.append(ctx)
        if register:
            await ctx.keys.ensure_keys_registered()
        return ctx

    yield factory

    for ctx in contexts:
        await ctx.close()
