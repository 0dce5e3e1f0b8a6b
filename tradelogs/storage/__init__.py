"""
Persistence collaborators for the crawler.
"""

from .base import Storage
from .memory import InMemoryStorage

__all__ = ["Storage", "InMemoryStorage"]
