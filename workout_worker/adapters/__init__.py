"""
Adapter pattern implementations for job sources and the workout store.

This module provides abstract base classes and concrete implementations
for different job sources (Postgres, SQS) and the Postgres workout store.
"""

from .base import JobSourceAdapter, StorageAdapter
from .postgres_adapter import PostgresJobSourceAdapter, PostgresStorageAdapter
from .sqs_adapter import SQSJobSourceAdapter

__all__ = [
    'JobSourceAdapter',
    'StorageAdapter',
    'PostgresJobSourceAdapter',
    'PostgresStorageAdapter',
    'SQSJobSourceAdapter'
]
