"""
Session Registry: the open forms of one daemon.

Disk is the fallback, memory is the working set:
- open sessions live in memory, keyed by id
- a closed (or evicted) session that can still be edited is written to
  saved/form-{port}-{id}.json, and lookup() brings it back
- readonly sessions are never written

There are no timers in here. The daemon's watchdog calls sweep() every
few seconds; tests call it directly.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from outpost_forms.core.codec import parse_message, subject_from_message
from outpost_forms.core.ids import (
    SessionIds,
    parse_id,
    snapshot_file_name,
    snapshot_pattern,
)
from outpost_forms.core.settings import DaemonConfig
from outpost_forms.core.storage import (
    atomic_write_json,
    delete_old_files,
    read_json,
    unlink_quietly,
)
from outpost_forms.domain.constants import (
    ADDONS_DIR,
    END_OF_ADDON,
    EOL,
    READONLY_MODE,
    RESERVED_SESSION_ID,
    STARTUP_SAVE_GRACE_SECONDS,
    UNEXPANDED_PLACEHOLDERS,
)
from outpost_forms.domain.errors import ErrorKind, FormsError
from outpost_forms.domain.schemas import DaemonPaths, FormSession

logger = logging.getLogger(__name__)

_TRAILING_JUNK = re.compile(r"[\r\n]+[ \t]*!/ADDON![\s\S]*$")
_NOT_HIDDEN = re.compile(r"^[^.].*$")

# =============================================================================
# Arguments & Messages
# =============================================================================


def parse_args(args: list[str]) -> dict[str, Any]:
    """
    Turn the host's ``--name value`` arguments into an environment.

    Placeholders the host didn't expand ("{{MSG_INDEX}}") mean no value.
    A draft or ready message without MSG_INDEX came from an old host that
    can't accept a revision, so it's shown readonly.

    Example:
        ["--addon_name", "SCCoPIFO", "--MSG_INDEX", "{{MSG_INDEX}}"]
        → {"addon_name": "SCCoPIFO"}
    """
    environment: dict[str, Any] = {}
    i = 0
    while i < len(args):
        option = args[i]
        if option.startswith("--"):
            i += 1
            environment[option[2:]] = args[i] if i < len(args) else None
        i += 1

    for name in UNEXPANDED_PLACEHOLDERS:
        if environment.get(name) == "{{" + name + "}}":
            del environment[name]

    if environment.get("message_status") in ("draft", "ready") and not environment.get(
        "MSG_INDEX"
    ):
        environment["mode"] = READONLY_MODE
    return environment


def read_message(environment: dict[str, Any], msgs_dir: Path) -> str | None:
    """
    The message a session was opened with.

    Either environment["message"] or the host's temporary file
    msgs_dir/MSG_FILENAME. The file is deleted once read; the host
    sometimes appends junk after the end-of-addon line, which is dropped.

    Raises:
        OSError: the temporary file couldn't be read
    """
    message = environment.get("message")
    if message:
        return message
    file_name = environment.get("MSG_FILENAME")
    if not file_name:
        return None

    path = msgs_dir / file_name
    message = path.read_text(encoding="utf-8", errors="replace")
    unlink_quietly(path)
    if not message:
        return message
    return _TRAILING_JUNK.sub(EOL + END_OF_ADDON + EOL, message)


# =============================================================================
# Sweep Outcome
# =============================================================================


@dataclass
class SweepOutcome:
    """What one sweep() tick did."""
    closed: list[str] = field(default_factory=list)
    any_open: bool = False
    idle_time: float = 0
    idle_expired: bool = False


# =============================================================================
# Registry
# =============================================================================


class SessionRegistry:
    """
    Sessions of the daemon listening on port.

    Usage:
        registry = SessionRegistry(paths, port=9001)
        form_id = registry.open(["--addon_name", "SCCoPIFO", ...])
        session = registry.require(form_id)
        registry.load(session)
        ...
        outcome = registry.sweep()
    """

    def __init__(
        self,
        paths: DaemonPaths,
        port: int,
        config: DaemonConfig | None = None,
    ):
        self.paths = paths
        self.port = port
        self.config = config or DaemonConfig()
        self.ids = SessionIds()
        self.sessions: dict[str, FormSession] = {}
        self.idle_time: float = 0

    # -------------------------------------------------------------------------
    # Opening & finding
    # -------------------------------------------------------------------------

    def open(self, args: list[str]) -> str:
        """
        Register a new session.

        Raises:
            FormsError: CONFIGURATION if --addon_name names an addon that
                isn't installed here (nothing is registered)
        """
        addon_name = _addon_name_of(args)
        if addon_name is not None:
            ini = self.paths.base_dir / ADDONS_DIR / f"{addon_name}.ini"
            if not ini.is_file():
                raise FormsError(
                    ErrorKind.CONFIGURATION,
                    f"This is not a server for {addon_name}.",
                    addon_name=addon_name,
                )

        form_id = self.ids.issue()
        self.sessions[form_id] = FormSession(id=form_id, args=list(args))
        logger.info(f"/form-{form_id} opened")
        return form_id

    def snapshot_path(self, form_id: str) -> Path:
        return self.paths.save_dir / snapshot_file_name(self.port, form_id)

    def lookup(self, form_id: str) -> FormSession | None:
        """The session from memory, else from its snapshot, else None."""
        session = self.sessions.get(form_id)
        if session is not None:
            return session

        path = self.snapshot_path(form_id)
        if not path.exists():
            return None
        try:
            session = FormSession.from_dict(read_json(path))
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Failed to read {path}: {e}")
            return None
        session.quiet_time = 0
        self.sessions[form_id] = session
        logger.info(f"Read {path}")
        return session

    def keep_alive(self, form_id: str) -> FormSession | None:
        """
        Note that the browser is still showing form_id.

        The reserved id "0" is created on demand: a browser pinging it
        keeps the daemon from idling out.
        """
        session = self.lookup(form_id)
        if session is not None:
            session.quiet_time = 0
        elif form_id == RESERVED_SESSION_ID:
            self.sessions[form_id] = FormSession(id=form_id)
        return session

    def missing(self, form_id: str) -> FormsError:
        """The NOT_FOUND error that explains why form_id isn't here."""
        number = parse_id(form_id)
        if number is None or number <= 0:
            message = "Form numbers start with 1."
        elif self.ids.was_issued(form_id):
            message = f"/form-{form_id} was discarded, since it was submitted or closed."
        else:
            message = f"/form-{form_id} has not been opened."
        return FormsError(ErrorKind.NOT_FOUND, message, form_id=form_id)

    def require(self, form_id: str) -> FormSession:
        """
        keep_alive() for a route that needs the session.

        Raises:
            FormsError: NOT_FOUND
        """
        session = self.keep_alive(form_id)
        number = parse_id(form_id)
        if session is None or number is None or number <= 0:
            logger.info(f"/form-{form_id} is not open")
            raise self.missing(form_id)
        return session

    def load(self, session: FormSession) -> FormSession:
        """
        Fill in a session's environment and message on first view.

        Raises:
            FormsError: CODEC or CONFIGURATION from the message
            OSError: the host's temporary message file is unreadable
        """
        form_id = session.id
        if session.environment is None:
            session.environment = parse_args(session.args)
            session.environment["emailURL"] = f"/email-{form_id}"
            session.environment["submitURL"] = f"/submit-{form_id}"
        environment = session.environment
        if session.readonly:
            environment["pingURL"] = f"/ping-{form_id}"
        else:
            environment["saveURL"] = f"/save-{form_id}"

        if session.message is not None:
            return session
        message = read_message(environment, self.paths.msgs_dir)
        session.message = message
        if message:
            parsed = parse_message(message)
            if not environment.get("ADDON_MSG_TYPE"):
                environment["ADDON_MSG_TYPE"] = parsed.form_type
            if not environment.get("addon_name"):
                environment["addon_name"] = parsed.addon_name
            if not environment.get("addon_version"):
                environment["addon_version"] = parsed.addon_version
            if not environment.get("subject"):
                environment["subject"] = subject_from_message(
                    parsed, self.paths.forms_dir
                )
        return session

    # -------------------------------------------------------------------------
    # Closing
    # -------------------------------------------------------------------------

    def close(self, form_id: str) -> bool:
        """
        Remove a session, writing its snapshot unless it's readonly.

        Closing an id that isn't open does nothing.

        Returns:
            True if a session was closed
        """
        session = self.sessions.pop(form_id, None)
        if session is None:
            return False

        if session.environment is None:
            logger.info(f"form {form_id} = {json.dumps(session.to_dict())}")
        elif not session.readonly:
            path = self.snapshot_path(form_id)
            try:
                atomic_write_json(path, session.to_dict())
                logger.info(f"Wrote {path}")
            except OSError as e:
                logger.error(f"Failed to write {path}: {e}")
            delete_old_files(
                self.paths.save_dir,
                snapshot_pattern(),
                self.config.snapshot_retention,
            )
        logger.info(f"/form-{form_id} closed")

        if session.environment and session.environment.get("MSG_FILENAME"):
            unlink_quietly(self.paths.msgs_dir / session.environment["MSG_FILENAME"])
        return True

    def close_all(self) -> list[str]:
        """Close every session (daemon shutdown)."""
        closed = [form_id for form_id in list(self.sessions) if self.close(form_id)]
        return closed

    def delete_snapshot(self, form_id: str) -> bool:
        return unlink_quietly(self.snapshot_path(form_id))

    def delete_own_snapshots(self) -> list[Path]:
        """Delete every snapshot this daemon wrote."""
        return delete_old_files(
            self.paths.save_dir, snapshot_pattern(self.port), -1
        )

    def prune_on_startup(self, now: float | None = None) -> list[Path]:
        """Delete files in saved/ left over from earlier daemons."""
        return delete_old_files(
            self.paths.save_dir, _NOT_HIDDEN, STARTUP_SAVE_GRACE_SECONDS, now=now
        )

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    def sweep(self) -> SweepOutcome:
        """
        One watchdog tick.

        Every session gets quieter by one interval; those quiet for the
        limit are closed. While no session is open, idle time accumulates
        toward the shutdown ceiling.
        """
        interval = self.config.sweep_interval
        outcome = SweepOutcome()
        any_sessions = bool(self.sessions)

        for form_id, session in list(self.sessions.items()):
            session.quiet_time += interval
            if session.quiet_time >= self.config.quiet_limit:
                self.close(form_id)
                outcome.closed.append(form_id)
            else:
                outcome.any_open = True

        if outcome.any_open:
            self.idle_time = 0
        else:
            if any_sessions:
                logger.info("forms are all closed")
            self.idle_time += interval
            if self.idle_time >= self.config.idle_shutdown:
                logger.info(f"idle_time = {self.idle_time / 3600:g} hours")
                outcome.idle_expired = True
        outcome.idle_time = self.idle_time
        return outcome


def _addon_name_of(args: list[str]) -> str | None:
    for i in range(len(args) - 1):
        if args[i] == "--addon_name":
            return args[i + 1]
    return None
