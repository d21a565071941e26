"""mdlive - local Markdown viewer daemon with live reload and search."""

__version__ = "0.1.0"
