"""
Subject lookup gateway.

Holds an authenticated portal session in a headless browser and serves
concurrent subject lookups by harvesting the portal's own backend calls.
"""

__version__ = "1.0.0"
