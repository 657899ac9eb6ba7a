"""wacli - WhatsApp from the terminal, backed by a shared background session."""

__version__ = "0.1.0"
