"""Version-control helpers."""
