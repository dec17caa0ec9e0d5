"""
API Routers package.
"""

from .conversations import router as conversations_router
from .files import router as files_router

__all__ = [
    "conversations_router",
    "files_router"
]
