"""
Database package: declarative base, ORM models and async connection management.
"""

__all__ = []
