"""
Anonymizing transform and its value generators.
"""

from .anonymizer import anonymize, anonymize_email
from .generators import (
    ALPHABET,
    VALUE_LENGTH,
    KeyedHashGenerator,
    RandomValueGenerator,
    ValueGenerator,
    build_generator,
)

__all__ = [
    "ALPHABET",
    "VALUE_LENGTH",
    "KeyedHashGenerator",
    "RandomValueGenerator",
    "ValueGenerator",
    "anonymize",
    "anonymize_email",
    "build_generator",
]
