"""
Pseudo-anonymous value generators.

A generator is any callable ``str -> str`` returning an 8-character value over
``[a-zA-Z0-9]``. Two interchangeable strategies are provided:

- ``RandomValueGenerator``: a fresh random value per call
- ``KeyedHashGenerator``: HMAC-SHA256 of the input under a secret key,
  so the same input always yields the same output
"""

import hashlib
import hmac
import secrets
import string
from typing import Callable

ALPHABET = string.ascii_letters + string.digits
VALUE_LENGTH = 8

ValueGenerator = Callable[[str], str]


class RandomValueGenerator:
    """Non-deterministic generator; the input value is ignored."""

    def __init__(self, length: int = VALUE_LENGTH):
        self.length = length

    def __call__(self, value: str) -> str:
        return "".join(secrets.choice(ALPHABET) for _ in range(self.length))


class KeyedHashGenerator:
    """
    Deterministic generator based on a keyed hash.

    Each digest byte is mapped onto the alphabet. Without the key the output
    cannot be linked back to the input.
    """

    def __init__(self, key: str | bytes, length: int = VALUE_LENGTH):
        if not key:
            raise ValueError("KeyedHashGenerator requires a non-empty key")
        if length > hashlib.sha256().digest_size:
            raise ValueError(f"length must be at most {hashlib.sha256().digest_size}")

        self._key = key.encode("utf-8") if isinstance(key, str) else key
        self.length = length

    def __call__(self, value: str) -> str:
        digest = hmac.new(self._key, value.encode("utf-8"), hashlib.sha256).digest()
        return "".join(ALPHABET[b % len(ALPHABET)] for b in digest[: self.length])


def build_generator(strategy: str, key: str | None = None) -> ValueGenerator:
    """
    Create a value generator for the configured strategy.

    Args:
        strategy: "random" or "keyed_hash"
        key: Secret key (required for "keyed_hash")

    Returns:
        Value generator callable

    Raises:
        ValueError: If strategy is unknown or the key is missing
    """
    if strategy == "random":
        return RandomValueGenerator()
    elif strategy == "keyed_hash":
        if not key:
            raise ValueError("keyed_hash strategy requires an anonymizer key")
        return KeyedHashGenerator(key)
    else:
        raise ValueError(
            f"Unsupported anonymizer strategy: {strategy}. "
            f"Supported: random, keyed_hash"
        )
