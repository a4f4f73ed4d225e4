"""Task board where humans and an AI agent move work through queues."""

__version__ = "0.1.0"
