"""Worker that turns short workout videos into structured workout records."""

__version__ = "0.1.0"
