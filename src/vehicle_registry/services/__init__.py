"""
Service layer packages.
"""
