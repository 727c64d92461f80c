"""Core services behind the course enrollment flows."""

from __future__ import annotations

from typing import Any

from .config import Settings, load_settings


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the enrollment HTTP application."""

    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Settings",
    "create_app",
    "load_settings",
]
