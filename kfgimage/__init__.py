"""Configuration image metadata, an image store and workspace materialization."""

__version__ = "0.1.0"
__all__ = ["metadata", "store", "materializer"]