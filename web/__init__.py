"""FastAPI web application for shipline.

This module provides the HTTP API that mirrors the CLI run commands.
All business logic is delegated to core modules in shipline/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
