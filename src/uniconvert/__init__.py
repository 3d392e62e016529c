"""
UniConvert relay package.

This module provides a FastAPI application that accepts a file upload and a
target format at `/convertFile`, drives the conversion on CloudConvert and
streams the converted file back. A Streamlit upload client lives in
`uniconvert.streamlit_app`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
