"""
API key generator - mint credentials for distribution.

Prints the plaintext key exactly once, together with the V2DOC_API_KEYS entry
to deploy. The entry carries only the SHA-256 hash, so the plaintext never
needs to be placed in the server environment.

Usage:
    python -m src.scripts.generate_api_key --user-id user-alice --name production-cli
"""

import argparse
import sys
from dataclasses import dataclass

import structlog

from src.api.auth.key_store import API_KEYS_ENV_VAR, ApiKeyStore

logger = structlog.get_logger(__name__)


@dataclass
class GeneratedKey:
    """A freshly minted key and its deployable entry."""

    plaintext: str
    hashed_key: str
    key_id: str
    user_id: str
    name: str

    @property
    def env_entry(self) -> str:
        """Entry for V2DOC_API_KEYS, using the hash instead of the key."""
        return f"{self.hashed_key}:{self.user_id}:{self.name}"


def generate(user_id: str, name: str | None = None) -> GeneratedKey:
    """Generate a new key for `user_id`."""
    if not user_id or ":" in user_id or "," in user_id:
        raise ValueError("user_id must be non-empty and must not contain ':' or ','")
    if name is not None and (":" in name or "," in name):
        raise ValueError("name must not contain ':' or ','")

    plaintext = ApiKeyStore.generate_key()
    hashed_key = ApiKeyStore.hash_key(plaintext)
    return GeneratedKey(
        plaintext=plaintext,
        hashed_key=hashed_key,
        key_id=ApiKeyStore.key_id(hashed_key),
        user_id=user_id,
        name=name or f"key-{user_id}",
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point for the generator."""
    parser = argparse.ArgumentParser(description="Generate a v2doc API key.")
    parser.add_argument("--user-id", required=True, help="Identity the key authenticates as")
    parser.add_argument("--name", default=None, help="Human label for the key")
    parser.add_argument(
        "--count", type=int, default=1, help="Number of keys to generate (default: 1)"
    )
    args = parser.parse_args(argv)

    if args.count < 1:
        parser.error("--count must be at least 1")

    try:
        keys = [generate(args.user_id, args.name) for _ in range(args.count)]
    except ValueError as e:
        logger.error("Invalid key parameters", error=str(e))
        return 1

    logger.info("Generated API keys", count=len(keys), user_id=args.user_id)

    for key in keys:
        print(f"API key ({key.key_id}): {key.plaintext}")
    print()
    print("Store the key above now; it will not be shown again.")
    print(f"{API_KEYS_ENV_VAR} entry:")
    print(",".join(key.env_entry for key in keys))

    return 0


if __name__ == "__main__":
    sys.exit(main())
