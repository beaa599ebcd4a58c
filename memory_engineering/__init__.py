"""Hybrid retrieval engine giving coding assistants durable project memory."""

__version__ = "0.1.0"
