"""Routers package."""

from . import (
    health,
    links,
    queue,
)
