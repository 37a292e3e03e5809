"""
HTTP API layer for the subject lookup gateway.
"""
