"""Load generator for STOMP-over-WebSocket chat backends."""

__version__ = "0.1.0"
