"""
HireChat Project - realtime presence and chat delivery core for the
hiring marketplace backend.

Tracks who is connected, routes chat events between clients and service
workers, and keeps both sides' unread state in sync.
"""

__version__ = "1.0.0"
