"""Tests for the authentication service.

Tests the stateless auth utility functions including key generation,
hashing, prefix extraction, and verification.
"""

from metahub_service.auth import (
    generate_user_key,
    get_key_prefix,
    hash_key,
    parse_key_info,
    verify_key_hash,
)

USER_ID = "3f2b9c0e-1d4a-4b7e-9a8c-6d5e4f3a2b1c"


def test_generate_user_key_format():
    """Test that generated user keys follow the expected format."""
    key = generate_user_key(USER_ID)

    parts = key.split("_")
    assert len(parts) == 3, "Key should have 3 underscore-separated parts"
    assert parts[0] == "usr", "First part should be 'usr'"
    assert parts[1] == USER_ID.replace("-", ""), "Second part should be the compact user id"

    # Check random part length (16 bytes = 32 hex chars)
    assert len(parts[2]) == 32, "Random part should be 32 hex characters (16 bytes)"
    assert all(c in "0123456789abcdef" for c in parts[2]), "Random part should be hex"


def test_generate_user_key_uniqueness():
    """Test that each generated key is unique."""
    keys = [generate_user_key(USER_ID) for _ in range(10)]
    assert len(set(keys)) == 10, "All generated keys should be unique"


def test_hash_key_deterministic():
    """Test that hashing the same key produces the same hash."""
    key = generate_user_key(USER_ID)
    assert hash_key(key) == hash_key(key)
    assert len(hash_key(key)) == 64, "SHA256 hex digest is 64 characters"


def test_hash_key_differs_per_key():
    assert hash_key(generate_user_key(USER_ID)) != hash_key(generate_user_key(USER_ID))


def test_get_key_prefix():
    """Test that the prefix hides the secret part."""
    key = generate_user_key(USER_ID)
    prefix = get_key_prefix(key)

    assert prefix == f"usr_{USER_ID.replace('-', '')}_..."
    assert key.split("_")[2] not in prefix


def test_get_key_prefix_malformed():
    assert get_key_prefix("short") == "short..."
    assert get_key_prefix("x" * 30) == "x" * 20 + "..."


def test_parse_key_info_valid():
    info = parse_key_info("usr_abc123_ffff")
    assert info == {"user_ref": "abc123", "is_valid_format": True}


def test_parse_key_info_invalid():
    for key in ["invalid", "proj_1_admin_x", "usr__ffff", "tok_abc_ffff"]:
        assert parse_key_info(key)["is_valid_format"] is False


def test_verify_key_hash():
    """Test verification against stored hash."""
    key = generate_user_key(USER_ID)
    stored = hash_key(key)

    assert verify_key_hash(key, stored) is True
    assert verify_key_hash(key + "x", stored) is False
    assert verify_key_hash(generate_user_key(USER_ID), stored) is False
