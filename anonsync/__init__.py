"""
anonsync - continuous anonymizing replication of a customer collection.

Mirrors every insert/update of the source collection into an anonymized
target collection, resumable from a persisted change-stream checkpoint.
"""

__version__ = "0.1.0"
