"""Task manager for Roo Code task folders."""

__version__ = "0.3.0"
