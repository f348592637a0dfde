"""
API Routes for the conversation bot.
"""

from . import conversations, webhooks

__all__ = ["conversations", "webhooks"]
