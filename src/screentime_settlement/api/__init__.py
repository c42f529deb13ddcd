"""
Settlement API Module

FastAPI server exposing commitment creation, usage sync, settlement,
reconciliation and weekly pool endpoints.
"""

from .server import app, create_app, AppState

__all__ = ["app", "create_app", "AppState"]
