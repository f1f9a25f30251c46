"""
Tests for envelope classification and parsing.
"""

import json

import pytest

from e2ee_client.errors import MalformedEnvelope, UnsupportedVersion
from e2ee_client.wire import (
    EnvelopeKind,
    SenderKeyWireMessage,
    WireMessage,
    X3DHHeader,
    classify,
    parse_sender_key_message,
    parse_wire_message,
)
from e2ee_crypto.double_ratchet import DoubleRatchet
from e2ee_crypto.primitives import generate_dh_keypair, serialize_public_key
from e2ee_crypto.sender_keys import SenderKeyState


def pairwise_envelope(with_x3dh=False) -> bytes:
    _, peer_public = generate_dh_keypair()
    ratchet = DoubleRatchet.initiator(b"\x07" * 32, serialize_public_key(peer_public), b"ad")
    x3dh = None
    if with_x3dh:
        x3dh = X3DHHeader(
            identity_key=b"\x01" * 32,
            ephemeral_key=b"\x02" * 32,
            signed_prekey_id=1,
            one_time_prekey_id=4,
        )
    return WireMessage.from_encrypted(ratchet.encrypt(b"hi"), x3dh).to_bytes()


def group_envelope() -> bytes:
    state = SenderKeyState.generate(b"alice")
    return SenderKeyWireMessage.from_message(state.encrypt(b"hi")).to_bytes()


def test_classify():
    assert classify(pairwise_envelope()) is EnvelopeKind.PAIRWISE
    assert classify(group_envelope()) is EnvelopeKind.GROUP
    assert classify(b"hello there") is EnvelopeKind.FOREIGN
    assert classify(b"[1, 2]") is EnvelopeKind.FOREIGN
    assert classify(b'{"v": 2, "sk": true}') is EnvelopeKind.FOREIGN
    assert classify(b'{"v": true}') is EnvelopeKind.FOREIGN
    assert classify(b"\xff\xfe") is EnvelopeKind.FOREIGN


def test_pairwise_layout():
    first = json.loads(pairwise_envelope(with_x3dh=True))
    later = json.loads(pairwise_envelope())

    assert first['v'] == 1
    assert first['x3dh'] == {
        'identity_key': "01" * 32,
        'ephemeral_key': "02" * 32,
        'signed_prekey_id': 1,
        'one_time_prekey_id': 4,
    }
    assert set(first['header']) == {'ratchet_key', 'previous_chain_length', 'message_number'}
    assert 'x3dh' not in later
    assert len(bytes.fromhex(later['nonce'])) == 12


def test_parse_round_trip():
    data = pairwise_envelope(with_x3dh=True)
    message = parse_wire_message(data)
    assert message.x3dh.one_time_prekey_id == 4
    assert message.to_bytes() == data

    group = parse_sender_key_message(group_envelope())
    assert group.message.iteration == 0


def test_parse_rejects_other_versions():
    with pytest.raises(UnsupportedVersion) as excinfo:
        parse_wire_message(b'{"v": 2}')
    assert excinfo.value.version == 2


def test_parse_rejects_malformed():
    with pytest.raises(MalformedEnvelope):
        parse_wire_message(b"not json")
    with pytest.raises(MalformedEnvelope):
        parse_wire_message(group_envelope())
    with pytest.raises(MalformedEnvelope):
        parse_sender_key_message(pairwise_envelope())

    envelope = json.loads(pairwise_envelope())
    envelope['header']['ratchet_key'] = "abcd"
    with pytest.raises(MalformedEnvelope):
        parse_wire_message(json.dumps(envelope).encode())

    envelope = json.loads(pairwise_envelope())
    envelope['ciphertext'] = "not hex"
    with pytest.raises(MalformedEnvelope):
        parse_wire_message(json.dumps(envelope).encode())


def test_ratchet_key_serialization():
    _, public = generate_dh_keypair()
    envelope = json.loads(pairwise_envelope())
    envelope['header']['ratchet_key'] = serialize_public_key(public).hex()
    assert parse_wire_message(json.dumps(envelope).encode()).header.ratchet_key == serialize_public_key(public)


@pytest.mark.parametrize("value", [-1, 2 ** 32])
def test_counters_must_fit_u32(value):
    group = json.loads(group_envelope())
    group['message']['iteration'] = value
    with pytest.raises(MalformedEnvelope):
        parse_sender_key_message(json.dumps(group).encode())

    group = json.loads(group_envelope())
    group['message']['chain_id'] = value
    with pytest.raises(MalformedEnvelope):
        parse_sender_key_message(json.dumps(group).encode())

    pairwise = json.loads(pairwise_envelope())
    pairwise['header']['message_number'] = value
    with pytest.raises(MalformedEnvelope):
        parse_wire_message(json.dumps(pairwise).encode())

    first = json.loads(pairwise_envelope(with_x3dh=True))
    first['x3dh']['one_time_prekey_id'] = value
    with pytest.raises(MalformedEnvelope):
        parse_wire_message(json.dumps(first).encode())
