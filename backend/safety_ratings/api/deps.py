"""
Request dependencies.
"""

from fastapi import Request

from safety_ratings.context import AppContext


def get_context(request: Request) -> AppContext:
    """The application context created in the lifespan handler."""
    return request.app.state.context
