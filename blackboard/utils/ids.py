"""Identifier helpers."""

import uuid

from ..config.constants import SHORT_ID_LENGTH


def new_id() -> str:
    """A fresh 32-hex-character id for workers, sessions and drones."""
    return uuid.uuid4().hex


def short_id(value: str) -> str:
    """Display form of an id."""
    return value[:SHORT_ID_LENGTH]
