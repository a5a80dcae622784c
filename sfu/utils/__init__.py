"""Utility helpers for the signaling service."""

from .logging import configure_logging

__all__ = ["configure_logging"]
