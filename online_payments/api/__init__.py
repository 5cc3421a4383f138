"""HTTP API for online payments."""
from .main import create_app, run

__all__ = ["create_app", "run"]
