"""Catalog ingestion engine and its HTTP port."""

from .app import create_app

__all__ = ["create_app"]
