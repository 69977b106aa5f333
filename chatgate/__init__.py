"""chatgate — real-time chat gateway."""

__version__ = "0.4.0"
