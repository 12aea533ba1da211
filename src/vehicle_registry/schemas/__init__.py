"""
Pydantic schemas for the HTTP surface and the order cache.
"""
