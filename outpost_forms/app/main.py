"""
FastAPI application for the forms daemon.

The app holds no globals: everything it needs is put on app.state by
create_app(), so tests build one per tmp_path.

Run (normally started by the client, see outpost_forms.cli):
- outpost-forms serve
"""

import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from outpost_forms import __version__
from outpost_forms.app.routes import forms
from outpost_forms.app.services.submit import Submitter
from outpost_forms.core.registry import SessionRegistry
from outpost_forms.core.settings import SettingsCache
from outpost_forms.domain.schemas import DaemonPaths

logger = logging.getLogger(__name__)

# =============================================================================
# App Factory
# =============================================================================


def create_app(
    paths: DaemonPaths,
    registry: SessionRegistry,
    settings: SettingsCache | None = None,
    submitter: Submitter | None = None,
    daemon: Any = None,
    log_file: Path | None = None,
) -> FastAPI:
    """
    Build the session server.

    Args:
        paths: daemon folders
        registry: the daemon's sessions
        settings: delivery settings (default: paths.settings_file)
        submitter: delivery adapter (default: built from settings)
        daemon: object with request_stop(), for the stop route
        log_file: named on problem pages
    """
    settings = settings or SettingsCache(paths.settings_file)
    if submitter is None:
        submitter = Submitter(paths, settings, timeout=registry.config.submit_timeout)

    app = FastAPI(
        title="Outpost Forms",
        description="Local forms daemon for Outpost and PackItForms",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.paths = paths
    app.state.registry = registry
    app.state.settings = settings
    app.state.submitter = submitter
    app.state.daemon = daemon
    app.state.log_file = log_file

    # Routes
    app.include_router(forms.router, tags=["Forms"])

    # Static files (form templates, scripts, icons) for everything else
    if paths.forms_dir.exists():
        app.mount("/", StaticFiles(directory=paths.forms_dir), name="forms")
    else:
        logger.warning(f"{paths.forms_dir} doesn't exist; serving no static files")

    return app
