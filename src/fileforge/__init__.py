"""FileForge: asynchronous file format conversion orchestration."""

__all__ = ["__version__"]

__version__ = "0.1.0"
