"""
HTTP surface of the vehicle registry.
"""
