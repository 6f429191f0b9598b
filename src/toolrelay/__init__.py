"""toolrelay - resumable tool-calling agent loop."""

__version__ = "0.1.0"
