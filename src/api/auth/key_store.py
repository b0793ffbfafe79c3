"""
In-memory API key store.

Keys are loaded from the V2DOC_API_KEYS environment variable at startup.
Only SHA-256 hashes are kept; plaintext keys are never retained.

Validation is a single dict lookup on the candidate hash followed by one
constant-time comparison, so response time does not depend on how many keys
are registered or which one matched.
"""

import hashlib
import hmac
import os
import re
import secrets
from datetime import UTC, datetime

import structlog

from src.api.auth.models import ApiKeyRecord, RateLimitOverride

logger = structlog.get_logger(__name__)

API_KEYS_ENV_VAR = "V2DOC_API_KEYS"
API_KEY_PREFIX = "v2d_"

_HASHED_KEY_PATTERN = re.compile(r"^[a-f0-9]{64}$")


class ApiKeyStore:
    """
    Registry of hashed API keys, keyed by hash.

    One instance is created per application and shared by every request
    handler. `load` is meant to run before traffic starts; calling it again
    merges the new entries into the existing ones.
    """

    def __init__(self, env_var: str = API_KEYS_ENV_VAR) -> None:
        """
        Initialize an empty store.

        Args:
            env_var: Environment variable read by `load` when no source is given.
        """
        self._env_var = env_var
        self._keys: dict[str, ApiKeyRecord] = {}

    def load(self, source: str | None = None) -> int:
        """
        Load keys from a `key-or-hash:user_id[:name]` list.

        Entries are comma-separated. A key portion that is already a 64-char
        lowercase hex digest is stored as-is; anything else is hashed.

        Args:
            source: Raw key list. Falls back to the environment variable.

        Returns:
            Number of entries registered by this call.
        """
        raw = source if source is not None else os.getenv(self._env_var, "")
        if not raw.strip():
            logger.warning("No API keys configured", env_var=self._env_var)
            return 0

        entries = [e.strip() for e in raw.split(",") if e.strip()]
        loaded = 0
        skipped = 0

        for entry in entries:
            parts = entry.split(":")
            if len(parts) < 2:
                # Never log the entry itself, it may hold part of a secret
                skipped += 1
                continue

            key_or_hash, user_id = parts[0], parts[1]
            name = parts[2] if len(parts) > 2 else None
            self.register(key_or_hash, user_id, name)
            loaded += 1

        if skipped:
            logger.warning(
                "Skipped malformed API key entries",
                skipped=skipped,
                expected_format="key:userId[:name]",
            )

        logger.info("Loaded API keys", loaded=loaded, total=len(self._keys))
        return loaded

    def register(
        self,
        key_or_hash: str,
        user_id: str,
        name: str | None = None,
        *,
        expires_at: datetime | None = None,
        rate_limit: RateLimitOverride | None = None,
        is_active: bool = True,
    ) -> ApiKeyRecord:
        """
        Insert or overwrite a single record.

        Used by `load` and by admin flows that mint a key with
        `generate_key` and only hand the store its plaintext once.
        """
        hashed_key = (
            key_or_hash if self._is_already_hashed(key_or_hash) else self.hash_key(key_or_hash)
        )
        record = ApiKeyRecord(
            id=self.key_id(hashed_key),
            name=name or f"key-{user_id}",
            hashed_key=hashed_key,
            user_id=user_id,
            is_active=is_active,
            expires_at=expires_at,
            rate_limit=rate_limit,
            created_at=datetime.now(UTC),
            last_used_at=None,
        )
        self._keys[hashed_key] = record
        return record

    def validate(self, plaintext_key: str) -> ApiKeyRecord | None:
        """
        Validate a presented key.

        Returns:
            The matching record, or None if the key is unknown, inactive
            or expired. The caller cannot tell these cases apart.
        """
        if not plaintext_key:
            return None

        candidate_hash = self.hash_key(plaintext_key)
        record = self._keys.get(candidate_hash)
        if record is None:
            return None

        if not hmac.compare_digest(
            bytes.fromhex(candidate_hash), bytes.fromhex(record.hashed_key)
        ):
            return None

        if not record.is_active:
            return None

        now = datetime.now(UTC)
        if record.expires_at is not None and record.expires_at < now:
            return None

        record.last_used_at = now
        return record

    @staticmethod
    def hash_key(key: str) -> str:
        """Hash an API key using SHA-256."""
        # surrogatepass keeps arbitrary client strings hashable
        return hashlib.sha256(key.encode("utf-8", "surrogatepass")).hexdigest()

    @staticmethod
    def key_id(hashed_key: str) -> str:
        """Short, stable identifier for logs and lookups."""
        return f"key_{hashed_key[:8]}"

    @staticmethod
    def generate_key() -> str:
        """
        Generate a new plaintext API key.

        The caller shows it to the user exactly once and registers only its
        hash. The store itself never sees the returned value.
        """
        return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"

    def find_by_id(self, key_id: str) -> ApiKeyRecord | None:
        """Find a record by its short ID (admin/debug only)."""
        for record in self._keys.values():
            if record.id == key_id:
                return record
        return None

    def clear(self) -> None:
        """Drop all records."""
        self._keys.clear()

    @property
    def size(self) -> int:
        """Number of registered keys."""
        return len(self._keys)

    @staticmethod
    def _is_already_hashed(value: str) -> bool:
        return _HASHED_KEY_PATTERN.fullmatch(value) is not None
