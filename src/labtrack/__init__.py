"""Laboratory project, sample and inventory tracking."""

__version__ = "0.1.0"
