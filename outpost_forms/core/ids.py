"""
Session ids and the file names derived from them.

Ids are decimal strings assigned in order starting at 1 and never reused
while the daemon runs. "0" is reserved for the keep-alive session.
"""

import re


class SessionIds:
    """Monotonic id source."""

    def __init__(self, first: int = 1):
        self.next_id = first

    def issue(self) -> str:
        issued = str(self.next_id)
        self.next_id += 1
        return issued

    def was_issued(self, form_id: str) -> bool:
        """True if form_id is below the next id (it existed once)."""
        number = parse_id(form_id)
        return number is not None and 0 < number < self.next_id


def parse_id(form_id: str) -> int | None:
    """Numeric value of an id, or None if it isn't a number."""
    try:
        return int(form_id)
    except (TypeError, ValueError):
        return None


def snapshot_file_name(port: int, form_id: str) -> str:
    """form-{port}-{id}.json"""
    return f"form-{port}-{form_id}.json"


def snapshot_pattern(port: int | None = None) -> re.Pattern[str]:
    """Snapshot names of one daemon, or of any daemon if port is None."""
    port_part = str(port) if port is not None else r"\d+"
    return re.compile(rf"^form-{port_part}-\d+\.json$")


def cli_message_file_name(form_id: str) -> str:
    """Temporary message file handed to the CLI utility."""
    return f"form-{form_id}.txt"
