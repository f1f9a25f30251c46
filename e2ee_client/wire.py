"""
Wire envelopes carried as opaque ciphertext by the chat transport.

Both envelopes are JSON objects with a "v" discriminator:

- pairwise: {"v": 1, "x3dh"?: {...}, "header": {...}, "ciphertext": hex, "nonce": hex}
- group:    {"v": 1, "sk": true, "message": {"chain_id", "iteration", "ciphertext", "nonce"}}

Anything else is legacy plaintext.
"""

import json
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional

from pydantic import BaseModel, BeforeValidator, Field, PlainSerializer, ValidationError

from e2ee_crypto.double_ratchet import EncryptedMessage, MessageHeader
from e2ee_crypto.sender_keys import SenderKeyMessage

from .errors import MalformedEnvelope, UnsupportedVersion

WIRE_VERSION = 1


def _from_hex(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return bytes.fromhex(value)
    raise ValueError("expected a hex string")


HexBytes = Annotated[bytes, BeforeValidator(_from_hex), PlainSerializer(lambda b: b.hex(), return_type=str)]
PublicKeyHex = Annotated[HexBytes, Field(min_length=32, max_length=32)]
NonceHex = Annotated[HexBytes, Field(min_length=12, max_length=12)]
U32 = Annotated[int, Field(ge=0, le=2 ** 32 - 1)]


class X3DHHeader(BaseModel):
    """Handshake header, present only on the first message of a session"""
    identity_key: PublicKeyHex
    ephemeral_key: PublicKeyHex
    signed_prekey_id: U32
    one_time_prekey_id: Optional[U32] = None


class RatchetHeader(BaseModel):
    ratchet_key: PublicKeyHex
    previous_chain_length: U32
    message_number: U32


class WireMessage(BaseModel):
    """Pairwise (Double Ratchet) envelope"""
    v: Literal[1] = WIRE_VERSION
    x3dh: Optional[X3DHHeader] = None
    header: RatchetHeader
    ciphertext: HexBytes
    nonce: NonceHex

    @classmethod
    def from_encrypted(cls, encrypted: EncryptedMessage, x3dh: Optional[X3DHHeader] = None) -> 'WireMessage':
        return cls(
            x3dh=x3dh,
            header=RatchetHeader(
                ratchet_key=encrypted.header.ratchet_key,
                previous_chain_length=encrypted.header.previous_chain_length,
                message_number=encrypted.header.message_number,
            ),
            ciphertext=encrypted.ciphertext,
            nonce=encrypted.nonce,
        )

    def encrypted_message(self) -> EncryptedMessage:
        return EncryptedMessage(
            header=MessageHeader(
                ratchet_key=self.header.ratchet_key,
                previous_chain_length=self.header.previous_chain_length,
                message_number=self.header.message_number,
            ),
            ciphertext=self.ciphertext,
            nonce=self.nonce,
        )

    def to_bytes(self) -> bytes:
        data = self.model_dump(mode='json')
        if self.x3dh is None:
            del data['x3dh']
        return json.dumps(data, separators=(',', ':')).encode()


class SenderKeyPayload(BaseModel):
    chain_id: U32
    iteration: U32
    ciphertext: HexBytes
    nonce: NonceHex


class SenderKeyWireMessage(BaseModel):
    """Group (Sender Key) envelope"""
    v: Literal[1] = WIRE_VERSION
    sk: Literal[True] = True
    message: SenderKeyPayload

    @classmethod
    def from_message(cls, message: SenderKeyMessage) -> 'SenderKeyWireMessage':
        return cls(message=SenderKeyPayload(
            chain_id=message.chain_id,
            iteration=message.iteration,
            ciphertext=message.ciphertext,
            nonce=message.nonce,
        ))

    def sender_key_message(self) -> SenderKeyMessage:
        return SenderKeyMessage(
            chain_id=self.message.chain_id,
            iteration=self.message.iteration,
            ciphertext=self.message.ciphertext,
            nonce=self.message.nonce,
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode()


class EnvelopeKind(str, Enum):
    PAIRWISE = "pairwise"
    GROUP = "group"
    FOREIGN = "foreign"


def _load_object(data: bytes) -> Optional[Dict[str, Any]]:
    try:
        obj = json.loads(data)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _is_current_version(obj: Dict[str, Any]) -> bool:
    version = obj.get('v')
    return isinstance(version, int) and not isinstance(version, bool) and version == WIRE_VERSION


def classify(data: bytes) -> EnvelopeKind:
    """Cheap discriminator check, without validating the full structure"""
    obj = _load_object(data)
    if obj is None or not _is_current_version(obj):
        return EnvelopeKind.FOREIGN
    if obj.get('sk') is True:
        return EnvelopeKind.GROUP
    return EnvelopeKind.PAIRWISE


def parse_wire_message(data: bytes) -> WireMessage:
    """
    Parse a pairwise envelope.

    Raises:
        UnsupportedVersion: If "v" is present but not 1
        MalformedEnvelope: If the bytes are not a structurally valid pairwise envelope
    """
    obj = _load_object(data)
    if obj is None:
        raise MalformedEnvelope("Not a JSON object")
    if not _is_current_version(obj):
        raise UnsupportedVersion(obj.get('v'))
    if 'sk' in obj:
        raise MalformedEnvelope("Sender key envelope where a pairwise message was expected")
    try:
        return WireMessage.model_validate(obj)
    except ValidationError as e:
        raise MalformedEnvelope(f"Invalid pairwise envelope: {e.error_count()} error(s)")


def parse_sender_key_message(data: bytes) -> SenderKeyWireMessage:
    """
    Parse a group envelope.

    Raises:
        UnsupportedVersion: If "v" is present but not 1
        MalformedEnvelope: If the bytes are not a structurally valid group envelope
    """
    obj = _load_object(data)
    if obj is None:
        raise MalformedEnvelope("Not a JSON object")
    if not _is_current_version(obj):
        raise UnsupportedVersion(obj.get('v'))
    if obj.get('sk') is not True:
        raise MalformedEnvelope("Pairwise envelope where a sender key message was expected")
    try:
        return SenderKeyWireMessage.model_validate(obj)
    except ValidationError as e:
        raise MalformedEnvelope(f"Invalid sender key envelope: {e.error_count()} error(s)")
