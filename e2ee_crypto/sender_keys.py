"""
Sender Keys for group messaging.

Instead of a pairwise Double Ratchet per group member, each member owns one
forward-only symmetric chain per channel and hands its current seed to every
other member as a distribution. A message is encrypted once and every holder
of the distribution can derive its key.

A receiver can move its chain forward to any later iteration (caching the
keys it skips over) but can never rewind it.
"""

import json
from typing import Dict, Optional
from dataclasses import dataclass

from .primitives import (
    kdf_chain,
    encrypt_message,
    decrypt_message,
    generate_key,
    random_u32,
    CryptoError,
    DuplicateMessageError,
    TooManySkippedError,
    UnknownChainError,
)


SENDER_KEY_INFO = b"e2ee-sender-key-chain"


@dataclass
class SenderKeyDistribution:
    """
    Seed material a member needs to follow a sender's chain.

    Attributes:
        chain_id: Random identifier of the chain
        iteration: Chain position the seed corresponds to
        chain_key: 32-byte chain key at that position
        sender_id: Identifier of the sending user
    """
    chain_id: int
    iteration: int
    chain_key: bytes
    sender_id: bytes

    def to_dict(self) -> Dict:
        return {
            'chain_id': self.chain_id,
            'iteration': self.iteration,
            'chain_key': self.chain_key.hex(),
            'sender_id': self.sender_id.hex()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SenderKeyDistribution':
        chain_key = bytes.fromhex(data['chain_key'])
        if len(chain_key) != 32:
            raise CryptoError("Sender key distribution carries a malformed chain key")
        return cls(
            chain_id=int(data['chain_id']),
            iteration=int(data['iteration']),
            chain_key=chain_key,
            sender_id=bytes.fromhex(data['sender_id'])
        )


@dataclass
class SenderKeyMessage:
    """One encrypted group message"""
    chain_id: int
    iteration: int
    ciphertext: bytes
    nonce: bytes


U32_MAX = 2 ** 32 - 1


def _associated_data(chain_id: int, iteration: int) -> bytes:
    if not (0 <= chain_id <= U32_MAX and 0 <= iteration <= U32_MAX):
        raise CryptoError(f"Chain id {chain_id} or iteration {iteration} out of range")
    return chain_id.to_bytes(4, "big") + iteration.to_bytes(4, "big")


class SenderKeyState:
    """
    Our own sending chain for one channel.
    """

    def __init__(self, chain_id: int, chain_key: bytes, iteration: int, sender_id: bytes):
        self.chain_id = chain_id
        self.chain_key = chain_key
        self.iteration = iteration
        self.sender_id = sender_id

    @classmethod
    def generate(cls, sender_id: bytes) -> 'SenderKeyState':
        """
        Create a fresh chain with a random id and seed.

        Args:
            sender_id: Identifier of the local user
        """
        return cls(
            chain_id=random_u32(),
            chain_key=generate_key(),
            iteration=0,
            sender_id=sender_id
        )

    def distribution(self) -> SenderKeyDistribution:
        """Distribution for the chain's current position"""
        return SenderKeyDistribution(
            chain_id=self.chain_id,
            iteration=self.iteration,
            chain_key=self.chain_key,
            sender_id=self.sender_id
        )

    def encrypt(self, plaintext: bytes) -> SenderKeyMessage:
        """
        Encrypt one message and advance the chain.

        Args:
            plaintext: Message to encrypt
        """
        iteration = self.iteration
        self.chain_key, message_key = kdf_chain(self.chain_key, SENDER_KEY_INFO)
        self.iteration += 1

        nonce, ciphertext = encrypt_message(
            message_key, plaintext, _associated_data(self.chain_id, iteration)
        )
        return SenderKeyMessage(
            chain_id=self.chain_id,
            iteration=iteration,
            ciphertext=ciphertext,
            nonce=nonce
        )

    def export_state(self) -> str:
        return json.dumps({
            'chain_id': self.chain_id,
            'chain_key': self.chain_key.hex(),
            'iteration': self.iteration,
            'sender_id': self.sender_id.hex()
        })

    @classmethod
    def import_state(cls, state_json: str) -> 'SenderKeyState':
        data = json.loads(state_json)
        return cls(
            chain_id=data['chain_id'],
            chain_key=bytes.fromhex(data['chain_key']),
            iteration=data['iteration'],
            sender_id=bytes.fromhex(data['sender_id'])
        )


class ReceiverKeyState:
    """
    A receive chain derived from another member's distribution.
    """

    MAX_SKIP = 2000  # Maximum number of message keys cached per sender

    def __init__(self, chain_id: int, chain_key: bytes, iteration: int, sender_id: bytes,
                 cached_keys: Optional[Dict[int, bytes]] = None):
        self.chain_id = chain_id
        self.chain_key = chain_key
        self.iteration = iteration
        self.sender_id = sender_id
        self.cached_keys = cached_keys if cached_keys is not None else {}

    @classmethod
    def from_distribution(cls, distribution: SenderKeyDistribution) -> 'ReceiverKeyState':
        """Initialize from a received Sender Key distribution"""
        return cls(
            chain_id=distribution.chain_id,
            chain_key=distribution.chain_key,
            iteration=distribution.iteration,
            sender_id=distribution.sender_id
        )

    def decrypt(self, message: SenderKeyMessage) -> bytes:
        """
        Decrypt a message from this sender.

        Raises:
            UnknownChainError: If the message belongs to another chain
            TooManySkippedError: If the message is too far ahead
            DuplicateMessageError: If the message key was already consumed
            CryptoError: If authentication fails
        """
        if message.chain_id != self.chain_id:
            raise UnknownChainError(
                f"Message chain {message.chain_id} does not match receive chain {self.chain_id}"
            )

        associated_data = _associated_data(message.chain_id, message.iteration)

        if message.iteration in self.cached_keys:
            message_key = self.cached_keys.pop(message.iteration)
            return decrypt_message(message_key, message.nonce, message.ciphertext, associated_data)

        if message.iteration < self.iteration:
            raise DuplicateMessageError(
                f"Iteration {message.iteration} is behind the chain position {self.iteration}"
            )

        if message.iteration - self.iteration > self.MAX_SKIP:
            raise TooManySkippedError(
                f"Too many skipped messages: {message.iteration - self.iteration}"
            )

        # Advance the chain, caching intermediate keys
        while self.iteration < message.iteration:
            self.chain_key, skipped_key = kdf_chain(self.chain_key, SENDER_KEY_INFO)
            self.cached_keys[self.iteration] = skipped_key
            self.iteration += 1

        self.chain_key, message_key = kdf_chain(self.chain_key, SENDER_KEY_INFO)
        self.iteration += 1

        return decrypt_message(message_key, message.nonce, message.ciphertext, associated_data)

    def export_state(self) -> str:
        return json.dumps({
            'chain_id': self.chain_id,
            'chain_key': self.chain_key.hex(),
            'iteration': self.iteration,
            'sender_id': self.sender_id.hex(),
            'cached_keys': {str(i): k.hex() for i, k in self.cached_keys.items()}
        })

    @classmethod
    def import_state(cls, state_json: str) -> 'ReceiverKeyState':
        data = json.loads(state_json)
        return cls(
            chain_id=data['chain_id'],
            chain_key=bytes.fromhex(data['chain_key']),
            iteration=data['iteration'],
            sender_id=bytes.fromhex(data['sender_id']),
            cached_keys={int(i): bytes.fromhex(k) for i, k in data.get('cached_keys', {}).items()}
        )
