"""WhatsApp receptionist: per-phone conversation sessions and automated replies."""

__version__ = "1.0.0"
