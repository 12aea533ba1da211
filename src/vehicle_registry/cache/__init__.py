"""
Redis connection management and cache key construction.
"""
