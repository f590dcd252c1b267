"""
Installed add-ons and the forms they offer.

The host's menu is built from addons/<name>.launch files, whose lines
look like:

    ADDON -fn ICS-213_Message_Form -a SCCoPIFO -t form-ics213.html ...

The manual-entry page offers the same choices.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_LAUNCH_FILE = re.compile(r"^(.*)\.launch$")
_OPTIONS = ("-fn", "-a", "-t")


@dataclass
class AddonForm:
    """One ADDON menu line."""
    addon_name: str | None = None  # -a
    form_type: str | None = None  # -t
    display_name: str | None = None  # -fn

    @property
    def value(self) -> str:
        """What the manual page posts back: "addon form_type"."""
        return f"{self.addon_name} {self.form_type}"

    @property
    def label(self) -> str:
        if self.display_name:
            return self.display_name.replace("_", " ")
        return self.form_type or ""


def get_addon_names(addons_dir: Path) -> list[str]:
    """Names with a .launch file, sorted case-insensitively."""
    try:
        file_names = [p.name for p in addons_dir.iterdir()]
    except OSError as e:
        logger.warning(f"Failed to list {addons_dir}: {e}")
        return []
    names = []
    for file_name in file_names:
        found = _LAUNCH_FILE.match(file_name)
        if found and found.group(1):
            names.append(found.group(1))
    return sorted(names, key=str.lower)


def parse_launch_line(line: str) -> AddonForm:
    values: dict[str, str] = {}
    name: str | None = None
    value = ""
    for token in line.split()[1:]:
        if token in _OPTIONS:
            if name:
                values[name] = value
            name = token[1:]
            value = ""
        else:
            value += (" " if value else "") + token
    if name:
        values[name] = value
    return AddonForm(
        addon_name=values.get("a"),
        form_type=values.get("t"),
        display_name=values.get("fn"),
    )


def list_addon_forms(addons_dir: Path) -> list[AddonForm]:
    """
    Every form offered by an installed add-on.

    Lines without both an addon name and a form type are skipped.

    Raises:
        OSError: a .launch file is unreadable
    """
    forms = []
    for addon_name in get_addon_names(addons_dir):
        text = (addons_dir / f"{addon_name}.launch").read_text(
            encoding="utf-8", errors="replace"
        )
        for line in text.splitlines():
            if line.startswith("ADDON "):
                form = parse_launch_line(line)
                if form.addon_name and form.form_type:
                    forms.append(form)
    return forms
