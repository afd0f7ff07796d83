"""WhatsApp Cloud API webhook ingestion service."""

__version__ = "1.0.0"
