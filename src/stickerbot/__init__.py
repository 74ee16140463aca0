"""WhatsApp sticker bot."""

__version__ = "1.1.0"
