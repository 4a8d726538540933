"""
Authorized topic broadcast for persistent client connections.

Tracks which connections are subscribed to which topics in Redis, fans out
document updates to every subscriber, and re-checks each subscriber's session
at delivery time so revoked sessions stop receiving updates.
"""

__version__ = "0.1.0"
