"""
BFF Aggregator

Backend-for-Frontend service that fans one client request out to several
upstream services and returns a single response shaped for the client.
"""

__version__ = "1.0.0"
