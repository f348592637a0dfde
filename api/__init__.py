"""
API Module for the conversation bot.

FastAPI application with routes for:
- Transport webhooks
- Conversation state lookup
"""

from .main import create_app

__all__ = ["create_app"]
