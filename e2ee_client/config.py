"""
Configuration for the E2E encryption engine.

Defaults match the values the server side expects; every field except the
key version can be overridden from the environment.
"""

import os
from dataclasses import dataclass
from typing import Optional


# Bumped when key registration changes require every device to re-register.
# v2: fix stale one-time prekeys after re-registration.
KEY_VERSION = 2

INITIAL_OTP_COUNT = 100
OTP_REPLENISH_THRESHOLD = 25
OTP_REPLENISH_BATCH = 100


@dataclass
class E2EEConfig:
    """
    Engine settings.

    Attributes:
        server_url: Base URL of the key server
        db_path: Path of the local key store (":memory:" for an in-memory store)
        user_id: Local user id, used to seed sender key chains
        storage_passphrase: Encrypts stored values at rest when set
        key_version: Key-schema version; a mismatch forces re-registration
        initial_otp_count: One-time prekeys generated at registration
        otp_replenish_threshold: Server-side count below which we replenish
        otp_replenish_batch: One-time prekeys generated per replenishment
        request_timeout: Timeout for key server requests, in seconds
    """
    server_url: str = "http://localhost:8000"
    db_path: str = "client_data/e2ee.db"
    user_id: str = ""
    storage_passphrase: Optional[str] = None
    key_version: int = KEY_VERSION
    initial_otp_count: int = INITIAL_OTP_COUNT
    otp_replenish_threshold: int = OTP_REPLENISH_THRESHOLD
    otp_replenish_batch: int = OTP_REPLENISH_BATCH
    request_timeout: float = 10.0

    @classmethod
    def from_env(cls, **overrides) -> 'E2EEConfig':
        """
        Build a config from E2EE_* environment variables.

        Keyword arguments take precedence over the environment.
        """
        env = os.environ
        values = {
            'server_url': env.get('E2EE_SERVER_URL', cls.server_url),
            'db_path': env.get('E2EE_DB_PATH', cls.db_path),
            'user_id': env.get('E2EE_USER_ID', cls.user_id),
            'storage_passphrase': env.get('E2EE_STORAGE_PASSPHRASE') or None,
            'initial_otp_count': int(env.get('E2EE_INITIAL_OTP_COUNT', cls.initial_otp_count)),
            'otp_replenish_threshold': int(env.get('E2EE_OTP_REPLENISH_THRESHOLD', cls.otp_replenish_threshold)),
            'otp_replenish_batch': int(env.get('E2EE_OTP_REPLENISH_BATCH', cls.otp_replenish_batch)),
            'request_timeout': float(env.get('E2EE_REQUEST_TIMEOUT', cls.request_timeout)),
        }
        values.update(overrides)
        return cls(**values)
