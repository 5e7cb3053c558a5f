"""Starlette middleware and logging helpers."""
