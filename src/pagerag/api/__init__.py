"""HTTP surface for pagerag."""

from .app import AppDependencies, create_app

__all__ = ["AppDependencies", "create_app"]
