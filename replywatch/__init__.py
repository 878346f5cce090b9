"""ReplyWatch: exactly-once reply detection for outbound email."""

__version__ = "0.1.0"
