"""
Pytest fixtures for the forms daemon tests.

Every test gets its own add-on folder under tmp_path:

    addons/SCCoPIFO.ini
    addons/SCCoPIFO.launch
    pack-it-forms/form-ics213.html
    pack-it-forms/resources/html/ics-header.html
    pack-it-forms/msgs/
"""

from pathlib import Path

import pytest
import yaml

from outpost_forms.core.registry import SessionRegistry
from outpost_forms.core.settings import DaemonConfig, SettingsCache
from outpost_forms.domain.schemas import DaemonPaths

ADDON_NAME = "SCCoPIFO"
FORM_TYPE = "form-ics213.html"
PORT = 9001

FORM_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="pack-it-forms-subject-suffix" content="_ICS213_{{field:10.subject}}">
  <script type="text/javascript" src="resources/integration/integration.js"></script>
</head>
<body>
<div data-include-html="ics-header">{"5.": "PRIORITY"}</div>
<form id="the-form"></form>
</body>
</html>
"""

LAUNCH_FILE = (
    "ADDON -fn ICS-213_Message_Form -a SCCoPIFO -t form-ics213.html\r\n"
    "MENU -menu Forms\r\n"
    "ADDON -fn Check_In -a SCCoPIFO -t form-check-in.html\r\n"
    "ADDON -fn Broken -a SCCoPIFO\r\n"
)

# =============================================================================
# Path Fixtures
# =============================================================================


@pytest.fixture
def project_root() -> Path:
    """Project root."""
    return Path(__file__).parent.parent


@pytest.fixture
def default_config_path(project_root: Path) -> Path:
    """default.yaml path."""
    return project_root / "default.yaml"


@pytest.fixture
def default_config(default_config_path: Path) -> dict:
    """The shipped default.yaml."""
    with open(default_config_path, encoding="utf-8") as f:
        return yaml.safe_load(f)


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    """An installed add-on folder."""
    base = tmp_path / "addon"
    (base / "addons").mkdir(parents=True)
    (base / "addons" / f"{ADDON_NAME}.ini").write_text("[SCCoPIFO]\n", encoding="utf-8")
    (base / "addons" / f"{ADDON_NAME}.launch").write_text(LAUNCH_FILE, encoding="utf-8")

    forms = base / "pack-it-forms"
    (forms / "msgs").mkdir(parents=True)
    (forms / "resources" / "html").mkdir(parents=True)
    (forms / FORM_TYPE).write_text(FORM_TEMPLATE, encoding="utf-8")
    (forms / "resources" / "html" / "ics-header.html").write_text(
        '<div>\n<p class="ics-header">ICS header</p>\n</div>\n', encoding="utf-8"
    )
    return base


@pytest.fixture
def paths(base_dir: Path) -> DaemonPaths:
    return DaemonPaths(base_dir)


# =============================================================================
# Message Fixtures
# =============================================================================


@pytest.fixture
def sample_message() -> str:
    """An urgent ICS-213 message, as the host writes it."""
    return (
        "!SCCoPIFO!\r\n"
        "#T: form-ics213.html\r\n"
        "#V: 3.2-2.1\r\n"
        "MsgNo: [6DM-001]\r\n"
        "5.: [IMMEDIATE]\r\n"
        "10.: [Exit [stage left`]]\r\n"
        "!/ADDON!\r\n"
    )


@pytest.fixture
def open_args() -> list[str]:
    """Launcher arguments for a new draft."""
    return [
        "--addon_name", ADDON_NAME,
        "--ADDON_MSG_TYPE", FORM_TYPE,
        "--message_status", "new",
        "--MSG_INDEX", "{{MSG_INDEX}}",
    ]


# =============================================================================
# Registry Fixtures
# =============================================================================


@pytest.fixture
def config() -> DaemonConfig:
    return DaemonConfig()


@pytest.fixture
def registry(paths: DaemonPaths, config: DaemonConfig) -> SessionRegistry:
    """A registry for a daemon on PORT."""
    return SessionRegistry(paths, PORT, config)


@pytest.fixture
def settings(paths: DaemonPaths) -> SettingsCache:
    return SettingsCache(paths.settings_file)
