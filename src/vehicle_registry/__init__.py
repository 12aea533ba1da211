"""
Vehicle registry: registration order workflow service.
"""

__version__ = "1.0.0"
