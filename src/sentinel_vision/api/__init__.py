"""HTTP and websocket adapter."""

from .server import AppContext, create_app

__all__ = ["AppContext", "create_app"]
