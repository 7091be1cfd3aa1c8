"""parksim - parking services on an event bus and session manager."""

__version__ = "1.0.0"
