"""
Form Routes: the session server.

- POST /openOutpostMessage → open a session (303 to its page)
- GET /form-<id> → form page
- POST /save-<id> → draft message from the browser
- POST /email-<id> → show the message readonly, ready to email
- POST /submit-<id> → deliver the message to the host
- GET /fromOutpost-<id> → the host's response to a failed submission
- GET /message-<id>/<subject> → message as plain text
- GET /ping-<id> → keep-alive (always 404)
- POST /stopSCCoPIFO → shut the daemon down
- GET /manual, POST /manual-create, POST /manual-view → manual entry

Every failure is shown to the operator as a problem page; the browser is
the only place the operator can see it.
"""

import logging
import re
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Form, Request
from fastapi.responses import (
    HTMLResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
)

from outpost_forms.app.services.addons import list_addon_forms
from outpost_forms.app.services.forms import render_form
from outpost_forms.app.services.pages import (
    host_response_page,
    manual_page,
    message_page,
    problem_page,
)
from outpost_forms.app.services.submit import Submitter, prepare_submission
from outpost_forms.core.codec import parse_message, subject_from_message
from outpost_forms.core.registry import SessionRegistry
from outpost_forms.domain.constants import (
    CHARSET,
    EOL,
    LOCALHOST,
    MISDIRECTED_REQUEST,
    NO_CACHE_HEADERS,
    OPEN_ROUTE,
    READONLY_MODE,
    RESERVED_SESSION_ID,
    SEE_OTHER,
    STOP_ROUTE,
)
from outpost_forms.domain.errors import ErrorKind, FormsError
from outpost_forms.domain.schemas import DaemonPaths, FormSession

logger = logging.getLogger(__name__)

router = APIRouter()

_CHARSET_PARAM = re.compile(r"; *charset=([^ ;]+)", re.IGNORECASE)


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_paths(request: Request) -> DaemonPaths:
    return request.app.state.paths


def get_log_file(request: Request) -> str | None:
    log_file: Path | None = getattr(request.app.state, "log_file", None)
    return log_file.name if log_file else None


def _problem(request: Request, error: Exception, state: Any = None) -> HTMLResponse:
    logger.warning(f"{request.method} {request.url.path}: {error}")
    return HTMLResponse(
        content=problem_page(error, state, get_log_file(request)),
        headers=NO_CACHE_HEADERS,
    )


def _see_other(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=SEE_OTHER)


# =============================================================================
# Opening
# =============================================================================


@router.post(OPEN_ROUTE)
async def open_message(request: Request) -> Response:
    """
    Open a session for the host's arguments (a JSON list).

    An empty list is a dry run: it only proves the daemon is up. An
    unknown add-on is answered 421, so the client tries another daemon.
    """
    try:
        args = await request.json()
    except ValueError:
        args = None
    if not args or not isinstance(args, list):
        logger.info(f"{OPEN_ROUTE} dry run")
        return Response(status_code=200)

    registry = get_registry(request)
    try:
        form_id = registry.open([str(arg) for arg in args])
    except FormsError as e:
        logger.warning(f"{OPEN_ROUTE} {args}: {e}")
        return Response(status_code=MISDIRECTED_REQUEST)
    return _see_other(f"http://{LOCALHOST}:{registry.port}/form-{form_id}")


# =============================================================================
# Viewing
# =============================================================================


@router.get("/form-{form_id}", response_class=HTMLResponse)
async def view_form(request: Request, form_id: str) -> HTMLResponse:
    registry = get_registry(request)
    session: FormSession | None = None
    try:
        session = registry.require(form_id)
        logger.info(f"/form-{form_id} viewed")
        request.app.state.settings.get()
        registry.load(session)
        environment = session.environment or {}
        if environment.get("message_status") == "manual-created":
            page = message_page(session)
        else:
            page = render_form(
                session, get_paths(request).forms_dir, get_paths(request).includes_dir
            )
    except (FormsError, OSError, ValueError) as e:
        return _problem(request, e, session)
    return HTMLResponse(content=page, headers=NO_CACHE_HEADERS)


@router.get("/message-{form_id}/{subject:path}")
async def get_message(request: Request, form_id: str, subject: str) -> Response:
    """The message as text, for saving or pasting into the host."""
    registry = get_registry(request)
    session = registry.keep_alive(form_id)
    if session is None or session.environment is None:
        return _problem(request, registry.missing(form_id))
    return PlainTextResponse(
        content=f"#Subject: {session.environment.get('subject')}{EOL}{session.message or ''}",
        headers=NO_CACHE_HEADERS,
    )


@router.get("/fromOutpost-{form_id}")
async def from_outpost(request: Request, form_id: str) -> Response:
    """Replay what the host said about a rejected submission."""
    session = get_registry(request).sessions.get(form_id)
    if session is None or session.from_host is None:
        return Response(status_code=404)
    return Response(content=session.from_host.body, headers=session.from_host.headers)


@router.get("/ping-{form_id}")
async def ping(request: Request, form_id: str) -> Response:
    """Keep-alive. The browser ignores the response."""
    get_registry(request).keep_alive(form_id)
    return Response(status_code=404, headers=NO_CACHE_HEADERS)


@router.get("/msgs/{msgno}")
async def get_msgs(msgno: str) -> Response:
    # Messages are only served by session id.
    return Response(status_code=404)


# =============================================================================
# Editing & Submitting
# =============================================================================


@router.post("/save-{form_id}")
async def save_message(request: Request, form_id: str) -> Response:
    """Store the draft message the browser is showing."""
    registry = get_registry(request)
    session = registry.lookup(form_id)
    if session is None:
        logger.info(f"form {form_id} not saved")
        return Response(status_code=200)

    charset = CHARSET
    found = _CHARSET_PARAM.search(request.headers.get("content-type", ""))
    if found:
        charset = found.group(1)
    body = await request.body()
    try:
        message = body.decode(charset)
    except LookupError:
        message = body.decode(CHARSET, errors="replace")
    logger.info(f"/save-{form_id} {len(message)}")
    registry.keep_alive(form_id)
    session.message = message
    return Response(status_code=200)


@router.post("/email-{form_id}")
async def email_message(
    request: Request, form_id: str, formtext: str = Form("")
) -> Response:
    """Show the finished message readonly so the operator can email it."""
    registry = get_registry(request)
    session: FormSession | None = None
    try:
        session = registry.require(form_id)
        registry.load(session)
        session.message = formtext
        environment = session.environment
        environment["emailing"] = True
        environment["subject"] = subject_from_message(
            parse_message(formtext), get_paths(request).forms_dir
        )
        environment["mode"] = READONLY_MODE
    except (FormsError, OSError, ValueError) as e:
        return _problem(request, e, session)
    return _see_other(f"/form-{form_id}")


@router.post("/submit-{form_id}")
async def submit_message(
    request: Request, form_id: str, formtext: str = Form("")
) -> Response:
    """
    Deliver the message to the host.

    Success makes the session readonly (and deletes its snapshot); the
    operator can still view it. A rejection leaves it editable.
    """
    registry = get_registry(request)
    submitter: Submitter = request.app.state.submitter
    session: FormSession | None = None
    try:
        session = registry.require(form_id)
        registry.load(session)
        submission = prepare_submission(
            session, formtext, get_paths(request).forms_dir
        )
        environment = session.environment
        environment["subject"] = submission.subject

        if environment.get("message_status") == "manual":
            environment["message_status"] = "manual-created"
            session.message = formtext
            return _see_other(f"/form-{form_id}")

        session.message = submission.message
        await submitter.submit(submission)

    except FormsError as e:
        response = e.context.get("response")
        if e.kind == ErrorKind.HOST_REJECTED and response is not None:
            session.from_host = response
            logger.info(f"/form-{form_id} from Outpost {response.to_dict()}")
            return HTMLResponse(
                content=host_response_page(
                    f"http://{request.url.netloc}/fromOutpost-{form_id}",
                    response,
                    get_log_file(request),
                ),
                headers=NO_CACHE_HEADERS,
            )
        return _problem(request, e, session.environment if session else None)
    except (OSError, ValueError) as e:
        return _problem(request, e, session.environment if session else None)

    logger.info(f"/form-{form_id} submitted")
    session.environment["mode"] = READONLY_MODE
    # Not closed, so the operator can still view it.
    registry.delete_snapshot(form_id)
    return _see_other(f"/form-{form_id}")


# =============================================================================
# Manual Entry
# =============================================================================


@router.get("/manual", response_class=HTMLResponse)
async def manual(request: Request) -> HTMLResponse:
    """Choose a form to fill in without the host."""
    get_registry(request).keep_alive(RESERVED_SESSION_ID)
    try:
        forms = list_addon_forms(get_paths(request).addons_dir)
    except OSError as e:
        return _problem(request, e)
    return HTMLResponse(content=manual_page(forms))


@router.post("/manual-create")
async def manual_create(
    request: Request,
    form: str = Form(""),
    operator_call_sign: str = Form(""),
    operator_name: str = Form(""),
) -> Response:
    addon_name, _, form_type = form.partition(" ")
    args = [
        "--message_status", "manual",
        "--addon_name", addon_name,
        "--ADDON_MSG_TYPE", form_type,
        "--operator_call_sign", operator_call_sign,
        "--operator_name", operator_name,
    ]
    try:
        form_id = get_registry(request).open(args)
    except FormsError as e:
        return _problem(request, e, {"form": form})
    return _see_other(f"/form-{form_id}")


@router.post("/manual-view")
async def manual_view(request: Request) -> Response:
    """View a received message that was pasted into the manual page."""
    data = await request.form()
    args = ["--message_status", "unread", "--mode", READONLY_MODE]
    for name, value in data.items():
        args.extend([f"--{name}", str(value)])
    if data.get("OpDate") and data.get("OpTime"):
        args.extend(["--MSG_DATETIME_OP_RCVD", f"{data['OpDate']} {data['OpTime']}"])
    try:
        form_id = get_registry(request).open(args)
    except FormsError as e:
        return _problem(request, e, dict(data))
    return _see_other(f"/form-{form_id}")


# =============================================================================
# Shutdown
# =============================================================================


@router.post(STOP_ROUTE)
async def stop(request: Request) -> Response:
    logger.info(STOP_ROUTE)
    daemon = getattr(request.app.state, "daemon", None)
    if daemon is not None:
        daemon.request_stop()
    return Response(status_code=200)
