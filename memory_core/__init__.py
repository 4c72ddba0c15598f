"""
memory_core - per-owner personal knowledge store

Ingests candidate facts about named entities and keeps the store accurate,
non-duplicated, relevance-ranked and gracefully forgetful over time.
"""
from memory_core.core import MemoryCore

__version__ = "0.1.0"

__all__ = ['MemoryCore', '__version__']
