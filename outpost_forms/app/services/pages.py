"""
Pages the daemon writes itself (Jinja2 templates in app/templates/).

Forms come from the pack-it-forms folder; these are the pages around
them: the problem page, the manual-entry page and the plain message view.
"""

import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

from fastapi.templating import Jinja2Templates

from outpost_forms.app.services.addons import AddonForm
from outpost_forms.domain.schemas import FormSession, HostResponse

logger = logging.getLogger(__name__)

_templates_dir = Path(__file__).parent.parent / "templates"
jinja_templates = Jinja2Templates(directory=_templates_dir)


def _render(name: str, **context: Any) -> str:
    return jinja_templates.env.get_template(name).render(**context)


def _lines(text: str) -> list[str]:
    return [line for line in str(text).replace("\r", "\n").split("\n") if line]


def _state_text(state: Any) -> str | None:
    if state is None:
        return None
    if isinstance(state, FormSession):
        state = state.to_dict()
    if isinstance(state, str):
        return state
    text = json.dumps(state, default=str)
    # let the browser wrap long states
    return text.replace('","', '", "')


def problem_page(error: Any, state: Any = None, log_file: str | None = None) -> str:
    """
    Diagnostic page for a failure.

    Args:
        error: the exception (or message)
        state: session (or request data) that might explain it
        log_file: where to look for details
    """
    return _render(
        "problem.html",
        message_lines=_lines(str(error)),
        state=_state_text(state),
        log_file=log_file,
    )


def host_response_page(
    from_outpost_url: str, response: HostResponse, log_file: str | None = None
) -> str:
    """The host rejected a submission; show what it sent in an iframe."""
    return _render(
        "problem.html",
        from_outpost_url=from_outpost_url,
        message_lines=_lines(response.message),
        log_file=log_file,
    )


def manual_page(forms: list[AddonForm]) -> str:
    return _render("manual.html", forms=forms)


def message_url(form_id: str, subject: str | None) -> str:
    return f"/message-{form_id}/{quote(subject or '', safe='')}"


def message_page(session: FormSession) -> str:
    """A manually created message, ready to be copied into the host."""
    subject = (session.environment or {}).get("subject")
    return _render(
        "message.html",
        subject=subject,
        message=session.message,
        message_url=message_url(session.id, subject),
    )
