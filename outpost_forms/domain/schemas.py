"""
Data schemas for the forms daemon.

FormSession is the unit of work; its to_dict() form is what goes into a
snapshot file, so from_dict() must accept anything to_dict() wrote.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from outpost_forms.domain.constants import (
    ADDONS_DIR,
    CONFIG_FILENAME,
    FORMS_DIR,
    FORMS_INCLUDES_DIR,
    FORMS_MSGS_DIR,
    LOG_DIR,
    OPD_FAIL_FILENAME,
    PORT_FILENAME,
    READONLY_MODE,
    SAVE_DIR,
    SETTINGS_FILENAME,
)

# =============================================================================
# Sessions
# =============================================================================


@dataclass
class HostResponse:
    """What the host said when a submission failed."""
    message: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "headers": dict(self.headers),
            "body": self.body,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HostResponse":
        return cls(
            message=data.get("message", ""),
            headers=dict(data.get("headers") or {}),
            body=data.get("body", ""),
        )


@dataclass
class FormSession:
    """
    One open form.

    environment is None only for the reserved keep-alive session.
    """
    id: str
    args: list[str] = field(default_factory=list)
    environment: dict[str, Any] | None = None
    message: str | None = None
    quiet_time: float = 0
    from_host: HostResponse | None = None

    @property
    def readonly(self) -> bool:
        return bool(self.environment) and self.environment.get("mode") == READONLY_MODE

    def to_dict(self) -> dict[str, Any]:
        """Snapshot form."""
        return {
            "id": self.id,
            "args": list(self.args),
            "environment": self.environment,
            "message": self.message,
            "quiet_time": self.quiet_time,
            "from_host": self.from_host.to_dict() if self.from_host else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FormSession":
        from_host = data.get("from_host")
        return cls(
            id=str(data["id"]),
            args=list(data.get("args") or []),
            environment=data.get("environment"),
            message=data.get("message"),
            quiet_time=data.get("quiet_time", 0),
            from_host=HostResponse.from_dict(from_host) if from_host else None,
        )


# =============================================================================
# Codec
# =============================================================================


@dataclass
class ParsedMessage:
    """
    A decoded host message.

    fields maps short field names ("10.", "MsgNo") to unescaped values.
    """
    form_type: str
    fields: dict[str, str] = field(default_factory=dict)
    addon_name: str | None = None
    addon_version: str | None = None


# =============================================================================
# Submission
# =============================================================================


@dataclass
class Submission:
    """A finished message on its way to the host."""
    form_id: str
    addon_name: str | None
    subject: str
    message: str
    urgent: bool = False
    msg_index: str | None = None


# =============================================================================
# Paths
# =============================================================================


@dataclass
class DaemonPaths:
    """
    Where the daemon keeps things, relative to the add-on's folder.

    Every path is derived from base_dir so tests can use tmp_path.
    """
    base_dir: Path

    @property
    def addons_dir(self) -> Path:
        return self.base_dir / ADDONS_DIR

    @property
    def forms_dir(self) -> Path:
        return self.base_dir / FORMS_DIR

    @property
    def msgs_dir(self) -> Path:
        return self.base_dir / FORMS_MSGS_DIR

    @property
    def includes_dir(self) -> Path:
        return self.base_dir / FORMS_INCLUDES_DIR

    @property
    def log_dir(self) -> Path:
        return self.base_dir / LOG_DIR

    @property
    def save_dir(self) -> Path:
        return self.base_dir / SAVE_DIR

    @property
    def port_file(self) -> Path:
        return self.log_dir / PORT_FILENAME

    @property
    def settings_file(self) -> Path:
        return self.base_dir / SETTINGS_FILENAME

    @property
    def config_file(self) -> Path:
        return self.base_dir / CONFIG_FILENAME

    @property
    def opd_fail_file(self) -> Path:
        return self.base_dir / OPD_FAIL_FILENAME
