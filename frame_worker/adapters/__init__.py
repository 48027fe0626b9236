"""
Adapter pattern implementations for storage, ledger and queue backends.

This module provides abstract base classes and concrete implementations
for the object store (local disk, S3, in-memory), the job ledger
(Postgres, in-memory) and the work queue (Postgres, in-memory).
"""

from .base import JobLedger, ObjectStore, QueueState, WorkQueue
from .local_adapter import LocalObjectStore
from .memory_adapter import MemoryJobLedger, MemoryObjectStore, MemoryWorkQueue

__all__ = [
    'JobLedger',
    'ObjectStore',
    'QueueState',
    'WorkQueue',
    'LocalObjectStore',
    'MemoryJobLedger',
    'MemoryObjectStore',
    'MemoryWorkQueue'
]
