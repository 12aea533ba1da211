"""
Database models package initialization.

Models are imported here so they are registered with the Base metadata
before tables are created.
"""

from vehicle_registry.database.base import Base, UUIDMixin
from vehicle_registry.database.models.order import Order

__all__ = [
    "Base",
    "UUIDMixin",
    "Order",
]
