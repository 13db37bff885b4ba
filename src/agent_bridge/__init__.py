"""Bridge between a stream-json agent CLI and an event-streamed session API."""

__version__ = "0.1.0"
