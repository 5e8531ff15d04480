"""One-best dish ranking engine and its event-processing pipeline."""

__version__ = "0.1.0"
