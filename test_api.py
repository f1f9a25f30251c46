"""
Tests for the HTTP key server client against httpx.MockTransport.
"""

import json

import httpx
import pytest

from e2ee_client.api import KeyServerClient
from e2ee_client.errors import KeyServerError, UploadFailed
from e2ee_crypto.primitives import generate_identity_keypair, serialize_identity_public_key
from e2ee_crypto.x3dh import generate_signed_prekey, generate_one_time_prekeys


def make_client(handler, token="token-123"):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://keys.test")
    return KeyServerClient("http://keys.test", token=token, http_client=http_client)


def bundle_json():
    identity, _ = generate_identity_keypair()
    signed = generate_signed_prekey(identity, key_id=3)
    one_time = generate_one_time_prekeys(40, 1)[0]
    return {
        'identity_key': serialize_identity_public_key(identity.public_key()).hex(),
        'signed_prekey': signed.public_dict(),
        'one_time_prekey': one_time.public_dict(),
    }


async def test_get_key_bundle():
    data = bundle_json()
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=data)

    client = make_client(handler)
    bundle = await client.get_key_bundle("bob")
    await client.aclose()

    assert requests[0].method == "GET"
    assert requests[0].url.path == "/api/keys/bob/bundle"
    assert requests[0].headers["Authorization"] == "Bearer token-123"
    assert bundle.identity_key.hex() == data['identity_key']
    assert bundle.signed_pre_key_id == 3
    assert bundle.one_time_pre_key_id == 40


async def test_bundle_without_one_time_prekey():
    data = bundle_json()
    data['one_time_prekey'] = None

    client = make_client(lambda request: httpx.Response(200, json=data))
    bundle = await client.get_key_bundle("bob")
    await client.aclose()

    assert bundle.one_time_pre_key is None
    assert bundle.one_time_pre_key_id is None


async def test_malformed_bundle():
    client = make_client(lambda request: httpx.Response(200, json={'identity_key': "zz"}))
    with pytest.raises(KeyServerError):
        await client.get_key_bundle("bob")
    await client.aclose()


async def test_upload_identity_and_prekeys():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"status": "ok"})

    client = make_client(handler)
    await client.upload_identity_and_prekeys(
        b"\x01" * 32,
        {'key_id': 1, 'public_key': "aa", 'signature': "bb"},
        [{'key_id': 1, 'public_key': "cc"}]
    )
    await client.upload_one_time_prekeys([{'key_id': 2, 'public_key': "dd"}])
    await client.upload_signed_prekey({'key_id': 2, 'public_key': "ee", 'signature': "ff"})
    await client.aclose()

    path, body = bodies[0]
    assert path == "/api/keys/register"
    assert body['identity_key'] == "01" * 32
    assert body['one_time_prekeys'] == [{'key_id': 1, 'public_key': "cc"}]
    assert bodies[1] == ("/api/keys/prekeys/one-time", [{'key_id': 2, 'public_key': "dd"}])
    assert bodies[2][0] == "/api/keys/prekeys/signed"


async def test_prekey_count():
    client = make_client(lambda request: httpx.Response(200, json={"count": 17}))
    assert await client.get_one_time_prekey_count() == 17
    await client.aclose()


async def test_sender_key_distributions():
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/channels/general/sender-keys"
        if request.method == "POST":
            posted.append(json.loads(request.content))
            return httpx.Response(201, json={})
        return httpx.Response(200, json=[
            {"user_id": "alice", "chain_id": 7, "distribution": {"chain_id": 7}},
        ])

    client = make_client(handler)
    await client.upload_sender_key_distribution("general", 7, {"chain_id": 7})
    records = await client.get_sender_key_distributions("general")
    await client.aclose()

    assert posted == [{"chain_id": 7, "distribution": {"chain_id": 7}}]
    assert records[0].user_id == "alice"
    assert records[0].chain_id == 7


async def test_upload_error_is_upload_failed():
    client = make_client(lambda request: httpx.Response(400, json={"detail": "bad prekeys"}))
    with pytest.raises(UploadFailed) as excinfo:
        await client.upload_one_time_prekeys([])
    await client.aclose()

    assert excinfo.value.status_code == 400
    assert "bad prekeys" in str(excinfo.value)


async def test_fetch_error_is_key_server_error():
    client = make_client(lambda request: httpx.Response(404, text="not found"))
    with pytest.raises(KeyServerError) as excinfo:
        await client.get_key_bundle("nobody")
    await client.aclose()

    assert not isinstance(excinfo.value, UploadFailed)
    assert excinfo.value.status_code == 404


async def test_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    with pytest.raises(UploadFailed):
        await client.upload_sender_key_distribution("general", 1, {})
    with pytest.raises(KeyServerError):
        await client.get_one_time_prekey_count()
    await client.aclose()


async def test_no_token_no_auth_header():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"count": 0})

    client = make_client(handler, token=None)
    await client.get_one_time_prekey_count()
    await client.aclose()
    assert seen == [None]
