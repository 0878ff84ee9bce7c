"""API key utilities for user authentication.

This module provides stateless utility functions for API key generation,
hashing, and verification. Storage of key hashes lives in database.py and
the request-time lookup in dependencies.py.

Key format:
    usr_{user_id_without_dashes}_{random_hex_32}
    Example: usr_3f2b9c0e1d4a4b7e9a8c6d5e4f3a2b1c_a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6
"""

import hashlib
import secrets
import structlog

logger = structlog.get_logger(__name__)

KEY_PREFIX = "usr"


def generate_user_key(user_id: str) -> str:
    """
    Generate a new API key for a user.

    The key embeds the user id (dashes removed) so the owner can be found
    by prefix, followed by 16 bytes (128 bits) of cryptographic randomness.

    Example:
        >>> key = generate_user_key("3f2b9c0e-1d4a-4b7e-9a8c-6d5e4f3a2b1c")
        >>> key.startswith("usr_3f2b9c0e1d4a4b7e9a8c6d5e4f3a2b1c_")
        True
    """
    random_hex = secrets.token_hex(16)
    api_key = f"{KEY_PREFIX}_{user_id.replace('-', '')}_{random_hex}"

    logger.info("generated_user_key", user_id=user_id, key_prefix=get_key_prefix(api_key))
    return api_key


def parse_key_info(key: str) -> dict:
    """
    Split an API key into its components.

    Example:
        >>> parse_key_info("usr_abc123_ffff")
        {'user_ref': 'abc123', 'is_valid_format': True}
        >>> parse_key_info("invalid")
        {'user_ref': None, 'is_valid_format': False}
    """
    parts = key.split("_")
    if len(parts) == 3 and parts[0] == KEY_PREFIX and parts[1] and parts[2]:
        return {"user_ref": parts[1], "is_valid_format": True}
    return {"user_ref": None, "is_valid_format": False}


def hash_key(key: str) -> str:
    """
    Hash an API key using SHA256.

    Never store raw API keys; compare with verify_key_hash().
    """
    return hashlib.sha256(key.encode()).hexdigest()


def get_key_prefix(key: str) -> str:
    """
    Extract the non-secret part of an API key for lookup, logging and display.

    Example:
        >>> get_key_prefix("usr_abc123_ffff")
        'usr_abc123_...'
    """
    parts = key.split("_")
    if len(parts) >= 3:
        return f"{parts[0]}_{parts[1]}_..."
    return key[:20] + "..." if len(key) > 20 else key + "..."


def verify_key_hash(key: str, key_hash: str) -> bool:
    """Constant-time check that a raw API key matches its stored hash."""
    result = secrets.compare_digest(hash_key(key), key_hash)

    logger.debug(
        "key_verification",
        key_prefix=get_key_prefix(key),
        verified=result,
    )
    return result
