"""
Double Ratchet Algorithm

Implements the Double Ratchet algorithm for end-to-end encrypted messaging with
forward secrecy and break-in recovery. This algorithm combines a DH ratchet for
break-in recovery with a symmetric key ratchet for per-message keys.

The initiator seeds its first DH ratchet step against the responder's signed
prekey; the responder uses that signed prekey as its initial ratchet key.
"""

import json
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass

from .primitives import (
    generate_dh_keypair,
    dh_exchange,
    kdf_root,
    kdf_chain,
    encrypt_message,
    decrypt_message,
    serialize_public_key,
    serialize_private_key,
    deserialize_public_key,
    deserialize_private_key,
    CryptoError,
    DuplicateMessageError,
    TooManySkippedError,
)


RATCHET_INFO = b"e2ee-ratchet"
MESSAGE_KEY_INFO = b"e2ee-msg-key"


@dataclass
class MessageHeader:
    """
    Header sent in the clear alongside each ciphertext.

    Attributes:
        ratchet_key: Sender's current DH ratchet public key
        previous_chain_length: Messages sent in the sender's previous chain
        message_number: Position of this message in the current chain
    """
    ratchet_key: bytes
    previous_chain_length: int
    message_number: int

    def to_dict(self) -> Dict:
        return {
            'ratchet_key': self.ratchet_key.hex(),
            'previous_chain_length': self.previous_chain_length,
            'message_number': self.message_number
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'MessageHeader':
        return cls(
            ratchet_key=bytes.fromhex(data['ratchet_key']),
            previous_chain_length=int(data['previous_chain_length']),
            message_number=int(data['message_number'])
        )

    def encode(self) -> bytes:
        """Canonical byte encoding, authenticated as part of the AEAD associated data"""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':')).encode()


@dataclass
class EncryptedMessage:
    """Ratchet output: header + AEAD ciphertext + nonce"""
    header: MessageHeader
    ciphertext: bytes
    nonce: bytes


@dataclass
class RatchetState:
    """
    State of the Double Ratchet algorithm.

    Attributes:
        root_key: Root key for DH ratchet
        sending_chain_key: Current sending chain key
        receiving_chain_key: Current receiving chain key
        dh_private: Our current DH ratchet private key
        dh_public: Our current DH ratchet public key
        dh_remote_public: Remote party's current DH ratchet public key
        send_count: Number of messages sent in current chain
        recv_count: Number of messages received in current chain
        prev_send_count: Messages sent in previous chain
        skipped_keys: Dictionary of skipped message keys for out-of-order messages
        previous_remote_keys: Remote ratchet keys of chains we already moved past
        associated_data: X3DH associated data bound into every message
    """
    root_key: bytes
    sending_chain_key: Optional[bytes]
    receiving_chain_key: Optional[bytes]
    dh_private: Optional[bytes]
    dh_public: Optional[bytes]
    dh_remote_public: Optional[bytes]
    send_count: int = 0
    recv_count: int = 0
    prev_send_count: int = 0
    skipped_keys: Dict[Tuple[bytes, int], bytes] = None
    previous_remote_keys: List[bytes] = None
    associated_data: bytes = b""

    def __post_init__(self):
        if self.skipped_keys is None:
            self.skipped_keys = {}
        if self.previous_remote_keys is None:
            self.previous_remote_keys = []


def _hex_or_none(value: Optional[bytes]) -> Optional[str]:
    return value.hex() if value is not None else None


def _bytes_or_none(value: Optional[str]) -> Optional[bytes]:
    return bytes.fromhex(value) if value is not None else None


class DoubleRatchet:
    """
    Double Ratchet session for encrypted messaging.

    Provides forward secrecy and break-in recovery through:
    - DH ratchet: Updates DH keypair with each message exchange
    - Symmetric ratchet: Derives new chain keys for each message
    """

    MAX_SKIP = 1000  # Maximum number of message keys we'll skip and store
    MAX_PREVIOUS_CHAINS = 20  # Retired remote ratchet keys remembered for replay detection

    def __init__(self, state: RatchetState):
        self.state = state

    @classmethod
    def initiator(cls, shared_key: bytes, their_ratchet_key: bytes,
                  associated_data: bytes = b"") -> 'DoubleRatchet':
        """
        Initialize as the X3DH initiator.

        Args:
            shared_key: Shared secret from X3DH
            their_ratchet_key: Responder's signed prekey (their first ratchet key)
            associated_data: X3DH associated data
        """
        private_key, public_key = generate_dh_keypair()
        dh_output = dh_exchange(private_key, deserialize_public_key(their_ratchet_key))
        root_key, chain_key = kdf_root(shared_key, dh_output, RATCHET_INFO)

        return cls(RatchetState(
            root_key=root_key,
            sending_chain_key=chain_key,
            receiving_chain_key=None,
            dh_private=serialize_private_key(private_key),
            dh_public=serialize_public_key(public_key),
            dh_remote_public=their_ratchet_key,
            associated_data=associated_data
        ))

    @classmethod
    def responder(cls, shared_key: bytes, our_ratchet_private: bytes,
                  associated_data: bytes = b"") -> 'DoubleRatchet':
        """
        Initialize as the X3DH responder.

        Args:
            shared_key: Shared secret from X3DH
            our_ratchet_private: Private half of the signed prekey the initiator used
            associated_data: X3DH associated data
        """
        private_key = deserialize_private_key(our_ratchet_private)
        return cls(RatchetState(
            root_key=shared_key,
            sending_chain_key=None,
            receiving_chain_key=None,
            dh_private=our_ratchet_private,
            dh_public=serialize_public_key(private_key.public_key()),
            dh_remote_public=None,
            associated_data=associated_data
        ))

    @property
    def can_send(self) -> bool:
        return self.state.sending_chain_key is not None

    def _dh_ratchet_step(self, remote_public: bytes):
        """
        Perform a DH ratchet step.

        Args:
            remote_public: Remote party's new DH ratchet public key
        """
        self.state.prev_send_count = self.state.send_count
        self.state.send_count = 0
        self.state.recv_count = 0
        if self.state.dh_remote_public is not None:
            self.state.previous_remote_keys.append(self.state.dh_remote_public)
            del self.state.previous_remote_keys[:-self.MAX_PREVIOUS_CHAINS]
        self.state.dh_remote_public = remote_public

        remote_public_key = deserialize_public_key(remote_public)

        # Receiving chain from our current private key
        if self.state.dh_private is not None:
            private_key = deserialize_private_key(self.state.dh_private)
            dh_output = dh_exchange(private_key, remote_public_key)
            self.state.root_key, self.state.receiving_chain_key = kdf_root(
                self.state.root_key, dh_output, RATCHET_INFO
            )

        # Generate new DH keypair for sending
        new_private, new_public = generate_dh_keypair()
        self.state.dh_private = serialize_private_key(new_private)
        self.state.dh_public = serialize_public_key(new_public)

        dh_output = dh_exchange(new_private, remote_public_key)
        self.state.root_key, self.state.sending_chain_key = kdf_root(
            self.state.root_key, dh_output, RATCHET_INFO
        )

    def encrypt(self, plaintext: bytes) -> EncryptedMessage:
        """
        Encrypt a message.

        Args:
            plaintext: Message to encrypt

        Returns:
            EncryptedMessage with header, ciphertext and nonce
        """
        if self.state.sending_chain_key is None:
            raise CryptoError("Cannot encrypt without establishing session first")

        self.state.sending_chain_key, message_key = kdf_chain(
            self.state.sending_chain_key,
            MESSAGE_KEY_INFO
        )

        header = MessageHeader(
            ratchet_key=self.state.dh_public,
            previous_chain_length=self.state.prev_send_count,
            message_number=self.state.send_count
        )
        self.state.send_count += 1

        nonce, ciphertext = encrypt_message(
            message_key, plaintext, self.state.associated_data + header.encode()
        )
        return EncryptedMessage(header=header, ciphertext=ciphertext, nonce=nonce)

    def decrypt(self, message: EncryptedMessage) -> bytes:
        """
        Decrypt a message.

        Args:
            message: EncryptedMessage received from the peer

        Returns:
            Decrypted plaintext

        Raises:
            CryptoError: If decryption fails
        """
        header = message.header
        associated_data = self.state.associated_data + header.encode()

        # Check if we've already skipped and stored this message key
        skipped_key = (header.ratchet_key, header.message_number)
        if skipped_key in self.state.skipped_keys:
            message_key = self.state.skipped_keys.pop(skipped_key)
            return decrypt_message(message_key, message.nonce, message.ciphertext, associated_data)

        if header.ratchet_key in self.state.previous_remote_keys:
            raise DuplicateMessageError("Message from an earlier chain already received")

        if self.state.dh_remote_public != header.ratchet_key:
            if self.state.receiving_chain_key is not None:
                self._skip_message_keys(header.previous_chain_length)
            self._dh_ratchet_step(header.ratchet_key)
        elif header.message_number < self.state.recv_count:
            raise DuplicateMessageError(
                f"Message {header.message_number} already received in this chain"
            )

        # Skip message keys if needed (for out-of-order delivery)
        self._skip_message_keys(header.message_number)

        if self.state.receiving_chain_key is None:
            raise CryptoError("Receiving chain not initialized")

        self.state.receiving_chain_key, message_key = kdf_chain(
            self.state.receiving_chain_key,
            MESSAGE_KEY_INFO
        )
        self.state.recv_count = header.message_number + 1

        return decrypt_message(message_key, message.nonce, message.ciphertext, associated_data)

    def _skip_message_keys(self, until: int):
        """
        Skip and store message keys for out-of-order messages.

        Args:
            until: Message number to skip until (exclusive)
        """
        if self.state.recv_count + self.MAX_SKIP < until:
            raise TooManySkippedError(f"Too many skipped messages: {until - self.state.recv_count}")

        if self.state.receiving_chain_key is None:
            return

        while self.state.recv_count < until:
            self.state.receiving_chain_key, message_key = kdf_chain(
                self.state.receiving_chain_key,
                MESSAGE_KEY_INFO
            )
            key = (self.state.dh_remote_public, self.state.recv_count)
            self.state.skipped_keys[key] = message_key
            self.state.recv_count += 1

    def export_state(self) -> str:
        """
        Export ratchet state for persistence.

        Returns:
            JSON string of serialized state
        """
        state_dict = {
            'root_key': self.state.root_key.hex(),
            'sending_chain_key': _hex_or_none(self.state.sending_chain_key),
            'receiving_chain_key': _hex_or_none(self.state.receiving_chain_key),
            'dh_private': _hex_or_none(self.state.dh_private),
            'dh_public': _hex_or_none(self.state.dh_public),
            'dh_remote_public': _hex_or_none(self.state.dh_remote_public),
            'send_count': self.state.send_count,
            'recv_count': self.state.recv_count,
            'prev_send_count': self.state.prev_send_count,
            'skipped_keys': {
                f"{k[0].hex()}:{k[1]}": v.hex()
                for k, v in self.state.skipped_keys.items()
            },
            'associated_data': self.state.associated_data.hex(),
            'previous_remote_keys': [key.hex() for key in self.state.previous_remote_keys]
        }
        return json.dumps(state_dict)

    @classmethod
    def import_state(cls, state_json: str) -> 'DoubleRatchet':
        """
        Import ratchet state from persistence.

        Args:
            state_json: JSON string of serialized state

        Returns:
            DoubleRatchet instance with restored state
        """
        state_dict = json.loads(state_json)

        skipped_keys = {}
        for key_str, value_hex in state_dict.get('skipped_keys', {}).items():
            pub_hex, num_str = key_str.split(':')
            skipped_keys[(bytes.fromhex(pub_hex), int(num_str))] = bytes.fromhex(value_hex)

        return cls(RatchetState(
            root_key=bytes.fromhex(state_dict['root_key']),
            sending_chain_key=_bytes_or_none(state_dict['sending_chain_key']),
            receiving_chain_key=_bytes_or_none(state_dict['receiving_chain_key']),
            dh_private=_bytes_or_none(state_dict['dh_private']),
            dh_public=_bytes_or_none(state_dict['dh_public']),
            dh_remote_public=_bytes_or_none(state_dict['dh_remote_public']),
            send_count=state_dict['send_count'],
            recv_count=state_dict['recv_count'],
            prev_send_count=state_dict['prev_send_count'],
            skipped_keys=skipped_keys,
            associated_data=bytes.fromhex(state_dict.get('associated_data', '')),
            previous_remote_keys=[bytes.fromhex(k) for k in state_dict.get('previous_remote_keys', [])]
        ))
