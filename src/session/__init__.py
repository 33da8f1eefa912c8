"""
Session module for device endpoint lifecycle and persisted state
"""

from .context import DeviceSessionContext, STORAGE_KEY
from .storage import KeyValueStore, MemoryStore, JsonFileStore

__all__ = ['DeviceSessionContext', 'STORAGE_KEY', 'KeyValueStore', 'MemoryStore', 'JsonFileStore']
