"""
Campus Portal chat client

Keeps one realtime connection to the portal chat server, reconnects on
failure, and reconciles live messages with the channel history.
"""

__version__ = "0.1.0"
