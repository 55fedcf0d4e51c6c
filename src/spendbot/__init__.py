"""SpendBot: WhatsApp expense tracking assistant."""

__version__ = "0.1.0"
