"""
X3DH (Extended Triple Diffie-Hellman) Key Agreement Protocol

Establishes a shared secret between two parties who may not be online at the
same time. The responder publishes a bundle (identity key, signed prekey and,
optionally, a one-time prekey); the initiator combines it with a fresh
ephemeral key.

Identity keys are Ed25519 and take part in the DH computations through their
X25519 equivalents.
"""

from typing import Dict, List, Optional
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .primitives import (
    CryptoError,
    generate_dh_keypair,
    dh_exchange,
    hkdf_derive,
    sign,
    verify_signature,
    identity_private_to_dh,
    identity_public_to_dh,
    serialize_public_key,
    serialize_private_key,
    deserialize_public_key,
    deserialize_private_key,
    serialize_identity_public_key,
    deserialize_identity_public_key,
)


X3DH_INFO = b"e2ee-x3dh-shared-secret"

# 32 bytes of 0xFF prepended to the KDF input (curve25519 filler)
KDF_FILLER = b"\xff" * 32


@dataclass
class SignedPreKey:
    """
    Medium-term X25519 prekey signed by the identity key.

    Attributes:
        key_id: Monotonic identifier
        public_key: X25519 public key
        private_key: X25519 private key (never leaves the device)
        signature: Ed25519 signature over public_key by the identity key
    """
    key_id: int
    public_key: bytes
    private_key: bytes
    signature: bytes

    def public_dict(self) -> Dict:
        """Public half, as uploaded to the server"""
        return {
            'key_id': self.key_id,
            'public_key': self.public_key.hex(),
            'signature': self.signature.hex()
        }

    def to_dict(self) -> Dict:
        """Convert to dictionary for local persistence"""
        return {
            'key_id': self.key_id,
            'public_key': self.public_key.hex(),
            'private_key': self.private_key.hex(),
            'signature': self.signature.hex()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SignedPreKey':
        """Create from dictionary"""
        return cls(
            key_id=int(data['key_id']),
            public_key=bytes.fromhex(data['public_key']),
            private_key=bytes.fromhex(data['private_key']),
            signature=bytes.fromhex(data['signature'])
        )


@dataclass
class OneTimePreKey:
    """Single-use X25519 prekey"""
    key_id: int
    public_key: bytes
    private_key: bytes

    def public_dict(self) -> Dict:
        return {
            'key_id': self.key_id,
            'public_key': self.public_key.hex()
        }

    def to_dict(self) -> Dict:
        return {
            'key_id': self.key_id,
            'public_key': self.public_key.hex(),
            'private_key': self.private_key.hex()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'OneTimePreKey':
        return cls(
            key_id=int(data['key_id']),
            public_key=bytes.fromhex(data['public_key']),
            private_key=bytes.fromhex(data['private_key'])
        )


@dataclass
class PreKeyBundle:
    """
    Public key bundle fetched from the server for key exchange.

    Attributes:
        identity_key: Long-term Ed25519 identity public key
        signed_pre_key_id: Id of the signed prekey
        signed_pre_key: Medium-term X25519 public key
        signed_pre_key_signature: Identity-key signature over signed_pre_key
        one_time_pre_key_id: Id of the one-time prekey (optional)
        one_time_pre_key: Single-use X25519 public key (optional)
    """
    identity_key: bytes
    signed_pre_key_id: int
    signed_pre_key: bytes
    signed_pre_key_signature: bytes
    one_time_pre_key_id: Optional[int] = None
    one_time_pre_key: Optional[bytes] = None

    def to_dict(self) -> Dict:
        """Convert to the server's JSON layout"""
        one_time = None
        if self.one_time_pre_key is not None:
            one_time = {
                'key_id': self.one_time_pre_key_id,
                'public_key': self.one_time_pre_key.hex()
            }
        return {
            'identity_key': self.identity_key.hex(),
            'signed_prekey': {
                'key_id': self.signed_pre_key_id,
                'public_key': self.signed_pre_key.hex(),
                'signature': self.signed_pre_key_signature.hex()
            },
            'one_time_prekey': one_time
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PreKeyBundle':
        """Create from the server's JSON layout"""
        signed = data['signed_prekey']
        one_time = data.get('one_time_prekey')
        return cls(
            identity_key=bytes.fromhex(data['identity_key']),
            signed_pre_key_id=int(signed['key_id']),
            signed_pre_key=bytes.fromhex(signed['public_key']),
            signed_pre_key_signature=bytes.fromhex(signed['signature']),
            one_time_pre_key_id=int(one_time['key_id']) if one_time else None,
            one_time_pre_key=bytes.fromhex(one_time['public_key']) if one_time else None
        )


@dataclass
class X3DHResult:
    """
    Result of X3DH key agreement.

    Attributes:
        shared_key: The derived shared secret (32 bytes)
        associated_data: IK_initiator || IK_responder, bound into every message
        ephemeral_public: Initiator's ephemeral public key (empty on the responder side)
    """
    shared_key: bytes
    associated_data: bytes
    ephemeral_public: bytes = b""


def generate_signed_prekey(identity_private: Ed25519PrivateKey, key_id: int) -> SignedPreKey:
    """
    Generate a signed prekey.

    Args:
        identity_private: Our identity signing key
        key_id: Identifier advertised alongside the key

    Returns:
        SignedPreKey including private half and signature
    """
    private, public = generate_dh_keypair()
    public_bytes = serialize_public_key(public)
    return SignedPreKey(
        key_id=key_id,
        public_key=public_bytes,
        private_key=serialize_private_key(private),
        signature=sign(identity_private, public_bytes)
    )


def generate_one_time_prekeys(start_key_id: int, count: int) -> List[OneTimePreKey]:
    """
    Generate a batch of one-time prekeys with consecutive ids.

    Args:
        start_key_id: Id of the first key in the batch
        count: Number of keys to generate
    """
    prekeys = []
    for key_id in range(start_key_id, start_key_id + count):
        private, public = generate_dh_keypair()
        prekeys.append(OneTimePreKey(
            key_id=key_id,
            public_key=serialize_public_key(public),
            private_key=serialize_private_key(private)
        ))
    return prekeys


def verify_bundle(bundle: PreKeyBundle) -> bool:
    """Check the identity key's signature over the signed prekey"""
    identity = deserialize_identity_public_key(bundle.identity_key)
    return verify_signature(identity, bundle.signed_pre_key_signature, bundle.signed_pre_key)


def _derive_shared_key(dh_outputs: List[bytes]) -> bytes:
    return hkdf_derive(KDF_FILLER + b"".join(dh_outputs), salt=b"\x00" * 32, info=X3DH_INFO)


def initiate(our_identity_private: Ed25519PrivateKey, bundle: PreKeyBundle) -> X3DHResult:
    """
    Initiator side: derive a shared secret from the recipient's bundle.

    Args:
        our_identity_private: Our identity signing key
        bundle: Recipient's public key bundle

    Returns:
        X3DHResult with shared key, associated data and our ephemeral public key

    Raises:
        CryptoError: If the signed prekey signature does not verify
    """
    if not verify_bundle(bundle):
        raise CryptoError("Signed prekey signature verification failed")

    ephemeral_private, ephemeral_public = generate_dh_keypair()

    our_dh_identity = identity_private_to_dh(our_identity_private)
    their_identity = deserialize_identity_public_key(bundle.identity_key)
    their_dh_identity = identity_public_to_dh(their_identity)
    their_signed_pre = deserialize_public_key(bundle.signed_pre_key)

    # DH1 = DH(IK_A, SPK_B), DH2 = DH(EK_A, IK_B), DH3 = DH(EK_A, SPK_B)
    dh_outputs = [
        dh_exchange(our_dh_identity, their_signed_pre),
        dh_exchange(ephemeral_private, their_dh_identity),
        dh_exchange(ephemeral_private, their_signed_pre),
    ]

    # DH4 = DH(EK_A, OPK_B)
    if bundle.one_time_pre_key is not None:
        their_one_time = deserialize_public_key(bundle.one_time_pre_key)
        dh_outputs.append(dh_exchange(ephemeral_private, their_one_time))

    our_identity_public = serialize_identity_public_key(our_identity_private.public_key())

    return X3DHResult(
        shared_key=_derive_shared_key(dh_outputs),
        associated_data=our_identity_public + bundle.identity_key,
        ephemeral_public=serialize_public_key(ephemeral_public)
    )


def respond(
    our_identity_private: Ed25519PrivateKey,
    signed_pre_key_private: bytes,
    one_time_pre_key_private: Optional[bytes],
    their_identity_key: bytes,
    their_ephemeral_key: bytes,
) -> X3DHResult:
    """
    Responder side: mirror the initiator's computation.

    Args:
        our_identity_private: Our identity signing key
        signed_pre_key_private: Private half of the signed prekey the initiator used
        one_time_pre_key_private: Private half of the one-time prekey, if any
        their_identity_key: Initiator's Ed25519 identity public key
        their_ephemeral_key: Initiator's ephemeral X25519 public key

    Returns:
        X3DHResult with shared key and associated data
    """
    our_dh_identity = identity_private_to_dh(our_identity_private)
    their_dh_identity = identity_public_to_dh(deserialize_identity_public_key(their_identity_key))
    signed_pre = deserialize_private_key(signed_pre_key_private)
    ephemeral = deserialize_public_key(their_ephemeral_key)

    dh_outputs = [
        dh_exchange(signed_pre, their_dh_identity),
        dh_exchange(our_dh_identity, ephemeral),
        dh_exchange(signed_pre, ephemeral),
    ]

    if one_time_pre_key_private is not None:
        one_time = deserialize_private_key(one_time_pre_key_private)
        dh_outputs.append(dh_exchange(one_time, ephemeral))

    our_identity_public = serialize_identity_public_key(our_identity_private.public_key())

    return X3DHResult(
        shared_key=_derive_shared_key(dh_outputs),
        associated_data=their_identity_key + our_identity_public
    )
