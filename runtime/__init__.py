"""
Runtime wiring for the conversation bot.

This module handles:
- Building the explicitly owned bot context
- Replaying recorded events from the command line
"""

from .context import BotContext, build_context

__all__ = ["BotContext", "build_context"]
