"""Bundled script templates."""
