"""
Edge Router
HTTP edge router in front of the identity, write, static and verifier services
"""

__version__ = "1.0.0"
