"""Cryptographic utilities for secure secret generation."""

import secrets
import string


def generate_gateway_token(length: int = 32) -> str:
    """
    Generate a secure random gateway token.

    Args:
        length: Number of random bytes to generate (default: 32, i.e. 256 bits)

    Returns:
        Hex-encoded random string (two characters per byte)
    """
    return secrets.token_hex(length)


def validate_gateway_token(token: str) -> bool:
    """
    Validate a gateway token meets minimum security requirements.

    Args:
        token: Token to validate

    Returns:
        True if the token carries at least 256 bits of hex, False otherwise
    """
    if not token:
        return False

    if len(token) < 64:
        return False

    return all(c in string.hexdigits for c in token)
