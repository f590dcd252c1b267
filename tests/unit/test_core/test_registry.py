"""
test_registry.py - session registry tests

Checks:
1. open: ids in order, unknown add-on rejected before registering
2. parse_args: placeholders dropped, old-host drafts readonly
3. load: environment, message from the host's temp file
4. close: snapshot unless readonly, second close does nothing
5. lookup: snapshot brought back after eviction
6. sweep: eviction after the quiet limit, idle ceiling
7. NOT_FOUND messages
"""

import json
import os
import time
from pathlib import Path

import pytest

from outpost_forms.core.registry import SessionRegistry, parse_args, read_message
from outpost_forms.core.settings import DaemonConfig
from outpost_forms.domain.errors import ErrorKind, FormsError
from outpost_forms.domain.schemas import DaemonPaths, FormSession

# =============================================================================
# 1. open
# =============================================================================


class TestOpen:
    """SessionRegistry.open."""

    def test_ids_start_at_one(self, registry: SessionRegistry, open_args: list[str]):
        assert registry.open(open_args) == "1"
        assert registry.open(open_args) == "2"

    def test_session_registered_with_args(
        self, registry: SessionRegistry, open_args: list[str]
    ):
        form_id = registry.open(open_args)

        session = registry.sessions[form_id]
        assert session.args == open_args
        assert session.environment is None
        assert session.quiet_time == 0

    def test_unknown_addon_rejected(self, registry: SessionRegistry):
        """No addons/<name>.ini → CONFIGURATION, nothing registered."""
        with pytest.raises(FormsError) as exc_info:
            registry.open(["--addon_name", "Other"])

        assert exc_info.value.kind == ErrorKind.CONFIGURATION
        assert exc_info.value.message == "This is not a server for Other."
        assert registry.sessions == {}
        assert registry.ids.next_id == 1

    def test_no_addon_name_accepted(self, registry: SessionRegistry):
        assert registry.open(["--message_status", "unread"]) == "1"


# =============================================================================
# 2. parse_args
# =============================================================================


class TestParseArgs:
    """parse_args."""

    def test_pairs(self):
        assert parse_args(["--a", "1", "--b", "2"]) == {"a": "1", "b": "2"}

    def test_unexpanded_placeholders_dropped(self):
        environment = parse_args(
            [
                "--COPY_NAMES", "{{COPY_NAMES}}",
                "--MSG_INDEX", "{{MSG_INDEX}}",
                "--MSG_STATE", "{{MSG_STATE}}",
                "--SPOOL_DIR", "{{SPOOL_DIR}}",
                "--addon_name", "SCCoPIFO",
            ]
        )

        assert environment == {"addon_name": "SCCoPIFO"}

    def test_real_values_kept(self):
        environment = parse_args(["--MSG_INDEX", "42"])

        assert environment == {"MSG_INDEX": "42"}

    @pytest.mark.parametrize("status", ["draft", "ready"])
    def test_old_host_draft_is_readonly(self, status: str):
        environment = parse_args(["--message_status", status])

        assert environment["mode"] == "readonly"

    def test_draft_with_index_is_editable(self):
        environment = parse_args(["--message_status", "draft", "--MSG_INDEX", "7"])

        assert "mode" not in environment


# =============================================================================
# 3. load
# =============================================================================


class TestLoad:
    """SessionRegistry.load."""

    def test_environment_urls(self, registry: SessionRegistry, open_args: list[str]):
        session = registry.sessions[registry.open(open_args)]

        registry.load(session)

        assert session.environment["emailURL"] == "/email-1"
        assert session.environment["submitURL"] == "/submit-1"
        assert session.environment["saveURL"] == "/save-1"
        assert "pingURL" not in session.environment

    def test_readonly_gets_ping_url(self, registry: SessionRegistry):
        session = registry.sessions[
            registry.open(["--addon_name", "SCCoPIFO", "--mode", "readonly"])
        ]

        registry.load(session)

        assert session.environment["pingURL"] == "/ping-1"
        assert "saveURL" not in session.environment

    def test_message_from_temp_file(
        self, registry: SessionRegistry, paths: DaemonPaths, sample_message: str
    ):
        msg_file = paths.msgs_dir / "msg-1.txt"
        msg_file.write_text(sample_message + "You have new messages.\r\n", encoding="utf-8")
        session = registry.sessions[
            registry.open(["--message_status", "unread", "--MSG_FILENAME", "msg-1.txt"])
        ]

        registry.load(session)

        assert not msg_file.exists()
        assert session.message.endswith("!/ADDON!\r\n")
        assert "You have new messages" not in session.message
        assert session.environment["ADDON_MSG_TYPE"] == "form-ics213.html"
        assert session.environment["addon_name"] == "SCCoPIFO"
        assert session.environment["addon_version"] == "3.2-2.1"
        assert session.environment["subject"] == "6DM-001_I_ICS213_Exit [stage left]"

    def test_message_argument(self, registry: SessionRegistry, sample_message: str):
        session = registry.sessions[registry.open(["--message", sample_message])]

        registry.load(session)

        assert session.message == sample_message

    def test_environment_values_win(self, registry: SessionRegistry, sample_message: str):
        session = registry.sessions[
            registry.open(["--message", sample_message, "--subject", "Mine"])
        ]

        registry.load(session)

        assert session.environment["subject"] == "Mine"

    def test_no_message(self, registry: SessionRegistry, open_args: list[str]):
        session = registry.sessions[registry.open(open_args)]

        registry.load(session)

        assert session.message is None

    def test_read_message_missing_file(self, paths: DaemonPaths):
        with pytest.raises(OSError):
            read_message({"MSG_FILENAME": "nope.txt"}, paths.msgs_dir)


# =============================================================================
# 4. close
# =============================================================================


class TestClose:
    """SessionRegistry.close."""

    def test_editable_session_snapshotted(
        self, registry: SessionRegistry, open_args: list[str]
    ):
        form_id = registry.open(open_args)
        session = registry.load(registry.sessions[form_id])
        session.message = "draft"

        assert registry.close(form_id) is True

        snapshot = registry.snapshot_path(form_id)
        assert snapshot.name == "form-9001-1.json"
        data = json.loads(snapshot.read_text(encoding="utf-8"))
        assert data["message"] == "draft"
        assert form_id not in registry.sessions

    def test_readonly_session_not_snapshotted(self, registry: SessionRegistry):
        form_id = registry.open(["--addon_name", "SCCoPIFO", "--mode", "readonly"])
        registry.load(registry.sessions[form_id])

        registry.close(form_id)

        assert not registry.snapshot_path(form_id).exists()

    def test_never_viewed_session_not_snapshotted(
        self, registry: SessionRegistry, open_args: list[str]
    ):
        """No environment yet: nothing worth restoring."""
        form_id = registry.open(open_args)

        registry.close(form_id)

        assert not registry.snapshot_path(form_id).exists()

    def test_second_close_is_noop(self, registry: SessionRegistry, open_args: list[str]):
        form_id = registry.open(open_args)
        registry.load(registry.sessions[form_id])
        registry.close(form_id)
        registry.snapshot_path(form_id).unlink()

        assert registry.close(form_id) is False
        assert not registry.snapshot_path(form_id).exists()

    def test_deletes_temp_message_file(
        self, registry: SessionRegistry, paths: DaemonPaths
    ):
        form_id = registry.open(["--MSG_FILENAME", "msg-2.txt"])
        registry.sessions[form_id].message = "draft"
        registry.load(registry.sessions[form_id])
        msg_file = paths.msgs_dir / "msg-2.txt"
        msg_file.write_text("left over", encoding="utf-8")

        registry.close(form_id)

        assert not msg_file.exists()

    def test_prunes_old_snapshots(
        self, registry: SessionRegistry, paths: DaemonPaths, open_args: list[str]
    ):
        paths.save_dir.mkdir()
        old = paths.save_dir / "form-8000-3.json"
        old.write_text("{}", encoding="utf-8")
        eight_days_ago = time.time() - 8 * 24 * 60 * 60
        os.utime(old, (eight_days_ago, eight_days_ago))
        form_id = registry.open(open_args)
        registry.load(registry.sessions[form_id])

        registry.close(form_id)

        assert not old.exists()
        assert registry.snapshot_path(form_id).exists()

    def test_close_all(self, registry: SessionRegistry, open_args: list[str]):
        registry.open(open_args)
        registry.open(open_args)

        assert registry.close_all() == ["1", "2"]
        assert registry.sessions == {}


# =============================================================================
# 5. lookup / keep_alive
# =============================================================================


class TestLookup:
    """lookup, keep_alive, require."""

    def test_snapshot_restored(self, registry: SessionRegistry, open_args: list[str]):
        form_id = registry.open(open_args)
        session = registry.load(registry.sessions[form_id])
        session.message = "draft"
        session.quiet_time = 100
        registry.close(form_id)

        restored = registry.lookup(form_id)

        assert restored is not None
        assert restored.message == "draft"
        assert restored.quiet_time == 0
        assert registry.sessions[form_id] is restored

    def test_other_daemons_snapshot_ignored(
        self, registry: SessionRegistry, paths: DaemonPaths
    ):
        paths.save_dir.mkdir()
        (paths.save_dir / "form-8000-1.json").write_text(
            json.dumps(FormSession(id="1").to_dict()), encoding="utf-8"
        )

        assert registry.lookup("1") is None

    def test_corrupt_snapshot_is_missing(
        self, registry: SessionRegistry, paths: DaemonPaths
    ):
        paths.save_dir.mkdir()
        registry.snapshot_path("1").write_text("{not json", encoding="utf-8")

        assert registry.lookup("1") is None

    def test_keep_alive_resets_quiet_time(
        self, registry: SessionRegistry, open_args: list[str]
    ):
        form_id = registry.open(open_args)
        registry.sessions[form_id].quiet_time = 200

        registry.keep_alive(form_id)

        assert registry.sessions[form_id].quiet_time == 0

    def test_keep_alive_creates_reserved_session(self, registry: SessionRegistry):
        assert registry.keep_alive("0") is None
        assert "0" in registry.sessions
        assert registry.sessions["0"].environment is None

    def test_keep_alive_unknown_id(self, registry: SessionRegistry):
        assert registry.keep_alive("5") is None
        assert "5" not in registry.sessions

    def test_require_reserved_session_not_a_form(self, registry: SessionRegistry):
        registry.keep_alive("0")

        with pytest.raises(FormsError) as exc_info:
            registry.require("0")

        assert exc_info.value.message == "Form numbers start with 1."


# =============================================================================
# 6. sweep
# =============================================================================


class TestSweep:
    """SessionRegistry.sweep."""

    def test_evicted_after_quiet_limit_exactly_once(
        self, registry: SessionRegistry, paths: DaemonPaths
    ):
        """300 s of 5 s ticks: closed on the 60th, snapshot and temp file handled."""
        form_id = registry.open(["--MSG_FILENAME", "msg-3.txt"])
        registry.sessions[form_id].message = "draft"
        registry.load(registry.sessions[form_id])
        msg_file = paths.msgs_dir / "msg-3.txt"
        msg_file.write_text("temp", encoding="utf-8")

        closed_on = [
            tick for tick in range(1, 71) if form_id in registry.sweep().closed
        ]

        assert closed_on == [60]
        assert registry.snapshot_path(form_id).exists()
        assert not msg_file.exists()

    def test_ping_postpones_eviction(
        self, registry: SessionRegistry, open_args: list[str]
    ):
        form_id = registry.open(open_args)
        for _ in range(59):
            registry.sweep()
        registry.keep_alive(form_id)

        outcome = registry.sweep()

        assert outcome.closed == []
        assert outcome.any_open is True

    def test_reserved_session_swept_like_others(self, registry: SessionRegistry):
        registry.keep_alive("0")

        closed = [registry.sweep().closed for _ in range(60)]

        assert closed[-1] == ["0"]

    def test_idle_time_accumulates_only_with_nothing_open(
        self, registry: SessionRegistry, open_args: list[str]
    ):
        assert registry.sweep().idle_time == 5
        assert registry.sweep().idle_time == 10

        registry.open(open_args)

        assert registry.sweep().idle_time == 0

    def test_idle_ceiling(self, paths: DaemonPaths):
        config = DaemonConfig(sweep_interval=5, idle_shutdown=20)
        registry = SessionRegistry(paths, 9001, config)

        outcomes = [registry.sweep() for _ in range(4)]

        assert [o.idle_expired for o in outcomes] == [False, False, False, True]


# =============================================================================
# 7. NOT_FOUND
# =============================================================================


class TestMissing:
    """SessionRegistry.missing."""

    @pytest.mark.parametrize("form_id", ["0", "-3", "abc"])
    def test_start_with_one(self, registry: SessionRegistry, form_id: str):
        error = registry.missing(form_id)

        assert error.kind == ErrorKind.NOT_FOUND
        assert error.message == "Form numbers start with 1."

    def test_discarded(self, registry: SessionRegistry, open_args: list[str]):
        form_id = registry.open(open_args)
        registry.close(form_id)

        with pytest.raises(FormsError) as exc_info:
            registry.require(form_id)

        assert exc_info.value.message == (
            "/form-1 was discarded, since it was submitted or closed."
        )

    def test_not_opened(self, registry: SessionRegistry):
        assert registry.missing("7").message == "/form-7 has not been opened."


# =============================================================================
# Startup cleanup
# =============================================================================


class TestStartupCleanup:
    """prune_on_startup / delete_own_snapshots."""

    def test_prune_keeps_recent_and_hidden(
        self, registry: SessionRegistry, paths: DaemonPaths
    ):
        paths.save_dir.mkdir()
        old = paths.save_dir / "form-8000-1.json"
        recent = paths.save_dir / "form-8000-2.json"
        hidden = paths.save_dir / ".form.tmp"
        for path in (old, recent, hidden):
            path.write_text("{}", encoding="utf-8")
        two_minutes_ago = time.time() - 120
        for path in (old, hidden):
            os.utime(path, (two_minutes_ago, two_minutes_ago))

        deleted = registry.prune_on_startup()

        assert deleted == [old]
        assert recent.exists()
        assert hidden.exists()

    def test_delete_own_snapshots(self, registry: SessionRegistry, paths: DaemonPaths):
        paths.save_dir.mkdir()
        mine = paths.save_dir / "form-9001-1.json"
        theirs = paths.save_dir / "form-8000-1.json"
        mine.write_text("{}", encoding="utf-8")
        theirs.write_text("{}", encoding="utf-8")

        registry.delete_own_snapshots()

        assert not mine.exists()
        assert theirs.exists()


def test_snapshot_dir_created(registry: SessionRegistry, open_args: list[str], paths: DaemonPaths):
    """saved/ doesn't have to exist beforehand."""
    form_id = registry.open(open_args)
    registry.load(registry.sessions[form_id])

    registry.close(form_id)

    assert isinstance(paths.save_dir, Path)
    assert paths.save_dir.is_dir()
