"""
File Converter Service package.

This module provides a FastAPI application exposing REST endpoints for
uploading files, converting them between image and document formats, and
retrieving the results before they are automatically deleted.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
