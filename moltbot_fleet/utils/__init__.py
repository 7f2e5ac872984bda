"""Utility helpers."""

from .crypto import generate_gateway_token, validate_gateway_token

__all__ = ["generate_gateway_token", "validate_gateway_token"]
