"""
Application Services.

Roles:
- submit: deliver messages to the host (HTTP, then the CLI utility)
- forms: form pages with session data injected
- addons: installed add-ons and their forms
- pages: the daemon's own pages (problem, manual entry, message)
"""

from .submit import Submitter, prepare_submission

__all__ = [
    "Submitter",
    "prepare_submission",
]
