"""Multi-room chat relay with batched, bounded room history."""

__version__ = "0.1.0"
