"""
FastAPI routers for the caption renderer.
"""

from animcap.routers import health, render

__all__ = ["health", "render"]
