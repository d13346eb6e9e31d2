"""API routes for transcript retrieval."""

from caption.api import cache_routes, proxy_routes, routes

__all__ = ["routes", "cache_routes", "proxy_routes"]
