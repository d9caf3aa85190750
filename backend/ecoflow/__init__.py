"""EcoFlow smart-greenhouse monitoring and control API."""

__version__ = "0.1.0"
