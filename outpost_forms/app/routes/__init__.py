"""
FastAPI Routes.

forms: the session server (HTML pages, keep-alive, submission)
"""

from . import forms

__all__ = ["forms"]
