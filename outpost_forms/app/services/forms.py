"""
Form pages: a form template with the session's data injected.

The browser-side integration script reads two globals:
- integrationEnvironment: the session environment
- integrationMessage: the message text (or null)

They're defined inline, just before the integration.js script tag. The
browser caches integration.js, so the data can't go into that file.
"""

import html
import json
import logging
import re
from pathlib import Path
from typing import Any

from outpost_forms.domain.errors import ErrorKind, FormsError
from outpost_forms.domain.schemas import FormSession

logger = logging.getLogger(__name__)

_INTEGRATION_SCRIPT = re.compile(
    r"<\s*script\b[^>]*\bsrc\s*=\s*\"resources/integration/integration.js\""
)
_DATA_INCLUDE = re.compile(
    r"<\s*div\s+data-include-html\s*=\s*\"[^\"]*\"\s*>[^<]*</\s*div\s*>", re.IGNORECASE
)
_DATA_INCLUDE_PARTS = re.compile(r"\"([^\"]*)\"\s*>([^<]*)")
_OPENING_DIV = re.compile(r"^\s*<\s*div\s*>\s*", re.IGNORECASE)
_CLOSING_DIV = re.compile(r"</\s*div\s*>\s*$", re.IGNORECASE)
_LAST_EXTENSION = re.compile(r"\.([^.]*)$")

MAX_INCLUDE_DEPTH = 10
RECEIVER_STATUSES = ("read", "unread")


def _script_json(value: Any) -> str:
    """JSON that can't close the surrounding <script> element."""
    return json.dumps(value).replace("</", "<\\/")


def choose_form_file(environment: dict[str, Any], forms_dir: Path) -> str:
    """
    The template file to show.

    A received message uses name.receiver.html if the form has one.

    Raises:
        FormsError: CONFIGURATION if the environment names no addon or form
    """
    if not environment.get("addon_name"):
        raise FormsError(
            ErrorKind.CONFIGURATION,
            f"addon_name is {environment.get('addon_name')}",
        )
    form_type = environment.get("ADDON_MSG_TYPE")
    if not form_type:
        raise FormsError(
            ErrorKind.CONFIGURATION,
            "I don't know what form to display, since I received"
            f" {json.dumps(form_type)} instead of the name of a form.",
        )
    if environment.get("message_status") in RECEIVER_STATUSES:
        receiver = _LAST_EXTENSION.sub(r".receiver.\1", form_type)
        if (forms_dir / receiver).is_file():
            return receiver
    return form_type


def inject_integration_data(template: str, session: FormSession) -> str:
    script = (
        '<script type="text/javascript">'
        f"\n      var integrationEnvironment = {_script_json(session.environment)}"
        f";\n      var integrationMessage = {_script_json(session.message)}"
        ";\n    </script>\n    "
    )
    return _INTEGRATION_SCRIPT.sub(lambda found: script + found.group(0), template, count=1)


def expand_data_includes(template: str, includes_dir: Path, depth: int = 0) -> str:
    """
    Replace <div data-include-html="name">defaults</div> elements.

    Each becomes the content of includes_dir/name.html (without its
    enclosing div), followed by a call to add_form_default_values()
    when the element had default values. Included files may include
    others.

    Example:
        <div data-include-html="ics-header">{"5.": "PRIORITY"}</div>

    Raises:
        FormsError: CONFIGURATION if an include is missing or the nesting
            is too deep
    """
    matches = list(_DATA_INCLUDE.finditer(template))
    if not matches:
        return template
    if depth >= MAX_INCLUDE_DEPTH:
        raise FormsError(
            ErrorKind.CONFIGURATION,
            f"data-include-html is nested more than {MAX_INCLUDE_DEPTH} deep.",
        )

    chunks = []
    next_start = 0
    for found in matches:
        parts = _DATA_INCLUDE_PARTS.search(found.group(0))
        name = parts.group(1)
        defaults = html.unescape(parts.group(2).strip())
        logger.info(f"data-include-html {name} {defaults}")

        path = includes_dir / f"{name}.html"
        try:
            included = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise FormsError(
                ErrorKind.CONFIGURATION,
                f"Can't include {path.name}: {e}",
                include=name,
            ) from e
        included = _CLOSING_DIV.sub("", _OPENING_DIV.sub("", included, count=1), count=1)
        if defaults:
            included += (
                '<script type="text/javascript">\n'
                f"  add_form_default_values({defaults});\n"
                "</script>\n"
            )
        chunks.append(template[next_start : found.start()])
        chunks.append(included)
        next_start = found.end()
    chunks.append(template[next_start:])

    return expand_data_includes("".join(chunks), includes_dir, depth + 1)


def render_form(session: FormSession, forms_dir: Path, includes_dir: Path) -> str:
    """
    The HTML page for a loaded session.

    After an email view is shown, the message counts as sent.

    Raises:
        FormsError: CONFIGURATION
    """
    environment = session.environment or {}
    file_name = choose_form_file(environment, forms_dir)
    try:
        template = (forms_dir / file_name).read_text(
            encoding="utf-8", errors="replace"
        )
    except OSError as e:
        raise FormsError(
            ErrorKind.CONFIGURATION,
            f"I don't know about a form named {json.dumps(environment.get('ADDON_MSG_TYPE'))}."
            " Perhaps the message came from a newer version of the"
            f" {environment.get('addon_name')} add-on, so it might help to install"
            f" the latest version.\n\n{e}",
            form_type=environment.get("ADDON_MSG_TYPE"),
        ) from e

    page = expand_data_includes(inject_integration_data(template, session), includes_dir)
    if environment.pop("emailing", None):
        environment["message_status"] = "sent"
    return page
