"""
Domain caches built on the Redis client.
"""
