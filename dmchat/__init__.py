"""
Direct-messaging chat service.

FastAPI application exposing chat creation, messaging and participant
management, with realtime fan-out of chat updates over WebSockets.
"""

__version__ = "1.0.0"
