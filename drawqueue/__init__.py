"""Job queue and connection lifecycle for image generation servers."""

__version__ = "0.1.0"
