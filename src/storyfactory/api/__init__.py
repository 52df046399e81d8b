"""Status API for factory dashboards."""

from .routes import register_routes

__all__ = ["register_routes"]
