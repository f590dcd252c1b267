"""
Submission Adapter: hand a finished message to the host.

PREPARE → SEND → SUCCESS | HOST_REJECTED | TRANSPORT_FAILURE

The host's delivery endpoint scans the request body for an end marker
instead of trusting Content-Length, so the body is built by hand:
parameters in a fixed order, "#EOF" in the message disguised, and
"4VAO=\\r\\n#EOF" always last.

A host too old to have the delivery endpoint answers with its legacy
"success" page and actually does nothing. Then the message goes through
the add-on's command line utility instead.
"""

import asyncio
import logging
import re
from pathlib import Path
from urllib.parse import quote

import httpx

from outpost_forms.core.codec import parse_message, subject_from_message
from outpost_forms.core.ids import cli_message_file_name
from outpost_forms.core.settings import SettingsCache
from outpost_forms.core.storage import unlink_quietly
from outpost_forms.domain.constants import (
    ADDONS_DIR,
    CHARSET,
    CLI_PROGRAM_NAME,
    END_MARKER_PARAM,
    END_MARKER_VALUE,
    EOL,
    FORM_URLENCODED,
    HANDLING_FIELD,
    LEGACY_SUCCESS_PHRASE,
    RETURN_CODE_META,
    SUBMIT_TIMEOUT_SECONDS,
    URGENT_HANDLING,
)
from outpost_forms.domain.errors import ErrorKind, FormsError
from outpost_forms.domain.schemas import (
    DaemonPaths,
    FormSession,
    HostResponse,
    Submission,
)

logger = logging.getLogger(__name__)

_BARE_LF = re.compile(r"(?<!\r)\n")
_ENCODED_EOF = re.compile(r"%23([Ee])OF")
_RETURN_CODE_TAG = re.compile(
    rf"<\s*meta\s+[^>]*\bname\s*=\s*\"{RETURN_CODE_META}\"[^>]*", re.IGNORECASE
)
_CONTENT_ATTR = re.compile(r"\s+content\s*=\s*\"\s*([^\"]*)\s*\"", re.IGNORECASE)
_FIRST_HEADER_LINE = re.compile(r"^\s*![^\r\n]*[\r\n]+")
# httpx has already decoded the body.
_DROPPED_HEADERS = ("content-length", "connection", "content-encoding", "transfer-encoding")

# encodeURIComponent leaves these alone; the host expects the same.
_SAFE_CHARS = "!'()*~"

# =============================================================================
# Prepare
# =============================================================================


def prepare_submission(
    session: FormSession, message: str, forms_dir: Path
) -> Submission:
    """
    Turn the browser's form text into a Submission.

    The host requires CRLF line breaks. Handling IMMEDIATE (or I) makes
    the message urgent.

    Raises:
        FormsError: CODEC or CONFIGURATION from the message
    """
    parsed = parse_message(message)
    handling = parsed.fields.get(HANDLING_FIELD, "")
    environment = session.environment or {}
    return Submission(
        form_id=session.id,
        addon_name=environment.get("addon_name"),
        subject=subject_from_message(parsed, forms_dir),
        message=_BARE_LF.sub(EOL, message),
        urgent=handling in URGENT_HANDLING,
        msg_index=environment.get("MSG_INDEX"),
    )


def _param(name: str, value: str) -> str:
    return f"{quote(name, safe=_SAFE_CHARS)}={quote(value, safe=_SAFE_CHARS)}"


def escape_end_marker(body: str) -> str:
    """Percent-encode the "E" of an encoded "#EOF" (%23EOF → %23%45OF)."""
    return _ENCODED_EOF.sub(lambda found: "%23%{:02X}OF".format(ord(found.group(1))), body)


def build_delivery_body(submission: Submission) -> str:
    """
    Request body for the delivery endpoint.

    Order: adn, upd (if revising), sub (if any), urg, msg (if any), then
    the end marker.

    Raises:
        FormsError: CONFIGURATION if there's no addon name
    """
    if not submission.addon_name:
        raise FormsError(
            ErrorKind.CONFIGURATION,
            "addon_name is required.",
            form_id=submission.form_id,
        )
    params = [_param("adn", submission.addon_name)]
    if submission.msg_index:
        params.append(_param("upd", submission.msg_index))
    if submission.subject:
        params.append(_param("sub", submission.subject))
    params.append(_param("urg", "TRUE" if submission.urgent else "FALSE"))
    if submission.message:
        params.append(_param("msg", submission.message))

    body = escape_end_marker("&".join(params))
    return body + "&" + _param(END_MARKER_PARAM, END_MARKER_VALUE)


# =============================================================================
# Interpret
# =============================================================================


def copy_headers(headers: httpx.Headers) -> dict[str, str]:
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in _DROPPED_HEADERS
    }


def parse_return_code(body: str) -> int:
    """
    The value of <meta name="OpDirectReturnCode" content="N">.

    No marker (or no number) counts as 0.
    """
    tag = _RETURN_CODE_TAG.search(body)
    if not tag:
        return 0
    content = _CONTENT_ATTR.search(tag.group(0))
    if not content:
        return 0
    digits = re.match(r"-?\d+", content.group(1).strip())
    return int(digits.group(0)) if digits else 0


def interpret_response(response: httpx.Response) -> HostResponse | None:
    """
    Decide whether the host accepted a submission.

    Returns:
        None if accepted, else what the host said
    """
    body = response.text
    if not 200 <= response.status_code < 300:
        return HostResponse(
            message=f"HTTP status {response.status_code} {response.reason_phrase}",
            headers=copy_headers(response.headers),
            body=body,
        )
    return_code = parse_return_code(body)
    if not 200 <= return_code < 300:
        return HostResponse(
            message=f"{RETURN_CODE_META} {return_code}",
            headers=copy_headers(response.headers),
            body=body,
        )
    return None


def is_legacy_response(response: httpx.Response) -> bool:
    return LEGACY_SUCCESS_PHRASE in response.text


# =============================================================================
# Submitter
# =============================================================================


class Submitter:
    """
    Sends Submissions to the host.

    Usage:
        submitter = Submitter(paths, SettingsCache(paths.settings_file))
        await submitter.submit(submission)  # raises FormsError on failure

    Args:
        paths: daemon folders
        settings: delivery endpoint settings (re-read when changed)
        timeout: seconds to wait for the host
        transport: httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        paths: DaemonPaths,
        settings: SettingsCache,
        timeout: float = SUBMIT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.paths = paths
        self.settings = settings
        self.timeout = timeout
        self.transport = transport

    async def submit(self, submission: Submission) -> None:
        """
        Deliver a submission.

        Raises:
            FormsError: TRANSPORT_TIMEOUT, TRANSPORT_REFUSED, HOST_REJECTED
                (with context["response"] when the host sent a page),
                CONFIGURATION
        """
        body = build_delivery_body(submission)
        response = await self.send(submission, body)

        if is_legacy_response(response):
            logger.info(
                f"/form-{submission.form_id} from Outpost {response.status_code} "
                f"{response.text}"
            )
            await self.submit_to_cli(submission)
            return

        rejected = interpret_response(response)
        if rejected is not None:
            raise FormsError(
                ErrorKind.HOST_REJECTED,
                rejected.message,
                form_id=submission.form_id,
                response=rejected,
            )

    async def send(self, submission: Submission, body: str) -> httpx.Response:
        """POST body to the delivery endpoint."""
        endpoint = self.settings.endpoint()
        logger.info(
            f"/form-{submission.form_id} to Outpost {endpoint.method} {endpoint.url} {body}"
        )
        try:
            async with httpx.AsyncClient(
                transport=self.transport, timeout=self.timeout
            ) as client:
                return await client.request(
                    endpoint.method,
                    endpoint.url,
                    content=body.encode(CHARSET),
                    headers={"Content-Type": FORM_URLENCODED},
                )
        except httpx.TimeoutException as e:
            raise FormsError(
                ErrorKind.TRANSPORT_TIMEOUT,
                f"Outpost didn't respond within {self.timeout:g} seconds.",
                form_id=submission.form_id,
            ) from e
        except httpx.ConnectError as e:
            raise FormsError(
                ErrorKind.TRANSPORT_REFUSED,
                f"Opdirect isn't running, it appears.{EOL}{e}",
                form_id=submission.form_id,
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # dropped connection, bad URL in the settings file, ...
            raise FormsError(
                ErrorKind.TRANSPORT_REFUSED,
                f"{endpoint.method} {endpoint.url} failed.{EOL}{type(e).__name__}: {e}",
                form_id=submission.form_id,
            ) from e

    async def submit_to_cli(self, submission: Submission) -> None:
        """
        Deliver through addons/{addon}/Aoclient.exe.

        The utility reports failure by creating the OpdFAIL file.

        Raises:
            FormsError: HOST_REJECTED, TRANSPORT_TIMEOUT
        """
        addon_name = submission.addon_name or ""
        msg_file = self.paths.msgs_dir / cli_message_file_name(submission.form_id)
        msg_file.parent.mkdir(parents=True, exist_ok=True)
        # The host adds its own "!addon!" line.
        msg_file.write_text(
            _FIRST_HEADER_LINE.sub("", submission.message, count=1),
            encoding=CHARSET,
            newline="",
        )
        unlink_quietly(self.paths.opd_fail_file)

        program = self.paths.base_dir / ADDONS_DIR / addon_name / CLI_PROGRAM_NAME
        options = ["-a", addon_name, "-f", str(msg_file), "-s", submission.subject]
        if submission.urgent:
            options.append("-u")
        logger.info(f"/form-{submission.form_id} to {program} {' '.join(options)}")

        output, returncode = await self._run(submission, program, options)

        if self.paths.opd_fail_file.exists():
            failure = self.paths.opd_fail_file.read_text(encoding=CHARSET, errors="replace")
            raise FormsError(
                ErrorKind.HOST_REJECTED,
                f"{self.paths.opd_fail_file.name} : {failure}\n\n{output}",
                form_id=submission.form_id,
            )
        if returncode != 0:
            raise FormsError(
                ErrorKind.HOST_REJECTED,
                f"{program} exited with status {returncode}\n\n{output}",
                form_id=submission.form_id,
            )
        unlink_quietly(msg_file)

    async def _run(
        self, submission: Submission, program: Path, options: list[str]
    ) -> tuple[str, int]:
        try:
            process = await asyncio.create_subprocess_exec(
                str(program),
                *options,
                cwd=self.paths.base_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FormsError(
                ErrorKind.HOST_REJECTED,
                f"Couldn't run {program}: {e}",
                form_id=submission.form_id,
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise FormsError(
                ErrorKind.TRANSPORT_TIMEOUT,
                f"{program.name} didn't finish within {self.timeout:g} seconds.",
                form_id=submission.form_id,
            ) from e

        output = stdout.decode(CHARSET, errors="replace") + stderr.decode(
            CHARSET, errors="replace"
        )
        return output, process.returncode or 0
