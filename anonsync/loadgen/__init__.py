"""
Synthetic load for the source collection.
"""

from .customers_generator import CustomersGenerator

__all__ = [
    "CustomersGenerator",
]
