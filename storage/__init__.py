"""
Storage Module for the conversation bot.

This module provides interchangeable state backends:
- SQL database via SQLAlchemy (local)
- Google Sheets via gspread (sheet)
- Per-conversation locking for the sheet backend
"""

from .base import StorageAdapter, with_deadline
from .locks import KeyedLocks

__all__ = ["StorageAdapter", "with_deadline", "KeyedLocks"]
