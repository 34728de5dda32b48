"""
FastAPI dependencies resolving the per-process service handles.
"""
from fastapi import Request

from chatsync.services.container import ChatServices


def get_services(request: Request) -> ChatServices:
    """Handles built in the application lifespan."""
    return request.app.state.services
