"""Backwards-compatible shim that exposes the packaged storycycle CLI."""

from storycycle.cli import app, main

__all__ = ["app", "main"]

if __name__ == "__main__":
    main()
