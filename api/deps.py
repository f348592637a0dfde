"""
Request-scoped access to the bot context.
"""

from fastapi import Request

from runtime.context import BotContext


def get_context(request: Request) -> BotContext:
    return request.app.state.context
