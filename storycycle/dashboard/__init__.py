"""Read-only web dashboard for cycle state."""

from storycycle.dashboard.server import create_app

__all__ = ["create_app"]
