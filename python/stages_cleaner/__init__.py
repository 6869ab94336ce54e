"""Policy-driven cleanup of published images and cached build stages."""

__version__ = "0.1.0"
