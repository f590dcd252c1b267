"""
Message codec: the host's bracket-escaped field format.

Wire format (one field per line, values may continue on following lines):

    !SCCoPIFO!
    #T: form-ics213.html
    #V: 3.2-2.1
    MsgNo: [6DM-001]
    10.: [Exit [stage left`]]
    !/ADDON!

Inside a value, "]" and "`" are escaped with a backtick. A value ends at
a "]" that is preceded by an even number of backticks.
"""

import html
import re
from pathlib import Path

from outpost_forms.domain.constants import (
    DEFAULT_HANDLING,
    DEFAULT_SUBJECT_PREFIX,
    DEFAULT_SUBJECT_SUFFIX,
    END_OF_ADDON,
    HANDLING_FIELD,
    SUBJECT_PREFIX_META,
    SUBJECT_SUFFIX_META,
)
from outpost_forms.domain.errors import ErrorKind, FormsError
from outpost_forms.domain.schemas import ParsedMessage

_LINE_BREAKS = re.compile(r"[\r\n]+")
_ADDON_LINE = re.compile(r"^!([^!]*)")
_FORM_TYPE_LINE = re.compile(r"^#\s*(T|FORMFILENAME):(.*)")
_VERSION_LINE = re.compile(r"^#\s*(V|VERSION):(.*)")
_CLOSING_BRACKET = re.compile(r"]\s*$")
_ESCAPED = re.compile(r"`([\]`])")
_NEEDS_ESCAPE = re.compile(r"([\]`])")
_META_TAG = re.compile(r"<\s*meta\b[^>]*\sname\s*=\s*\"([^\">]*)[^>]*>", re.IGNORECASE)
_META_CONTENT = re.compile(r"\scontent\s*=\s*\"([^\"]*)\"", re.IGNORECASE)
_FIELD_PLACEHOLDER = re.compile(r"\{\{field:([^}]*)\}\}")
_NOT_PRINTABLE_ASCII = re.compile(r"[^ -~]")

# =============================================================================
# Escaping
# =============================================================================


def escape_value(value: str) -> str:
    """Put a backtick before every "]" and "`"."""
    return _NEEDS_ESCAPE.sub(r"`\1", value)


def unescape_value(value: str) -> str:
    """Inverse of escape_value."""
    return _ESCAPED.sub(r"\1", value)


def format_field(name: str, value: str) -> str:
    """One field line: ``name: [escaped value]``."""
    return f"{name}: [{escape_value(value)}]"


def encode_message(
    form_type: str,
    fields: dict[str, str],
    addon_name: str | None = None,
    addon_version: str | None = None,
    eol: str = "\n",
) -> str:
    """
    Build message text in the host's wire format.

    Args:
        form_type: form template file name (written as "#T:")
        fields: field name → value, in output order
        addon_name: written as the "!name!" header line
        addon_version: written as "#V:"
        eol: line separator

    Returns:
        message text, ending with the end-of-addon marker
    """
    lines = []
    if addon_name:
        lines.append(f"!{addon_name}!")
    lines.append(f"#T: {form_type}")
    if addon_version:
        lines.append(f"#V: {addon_version}")
    lines.extend(format_field(name, value) for name, value in fields.items())
    lines.append(END_OF_ADDON)
    return eol.join(lines) + eol


def to_short_name(field_name: str) -> str:
    """
    Lookup key for a field: everything up to and including the last ".".

    "10.subject" → "10.", "MsgNo" → "MsgNo".
    """
    dot = field_name.rfind(".")
    if dot >= 0:
        return field_name[: dot + 1]
    return field_name


def unbracket_data(data: str) -> str | None:
    """
    Decode one bracketed value.

    Args:
        data: text starting at the opening "[" (possibly several lines)

    Returns:
        the unescaped value, or None if it continues on the next line
    """
    match = _CLOSING_BRACKET.search(data)
    if not match:
        return None
    value = data[1 : match.start()]
    backticks = len(value) - len(value.rstrip("`"))
    if backticks % 2 == 1:
        # "`]" - the bracket is part of the value
        return None
    if value.endswith("]]"):
        value = value[:-2]
    return unescape_value(value)


# =============================================================================
# Parsing
# =============================================================================


def parse_message(message: str) -> ParsedMessage:
    """
    Decode message text into its form type and fields.

    Args:
        message: message text in the host's wire format

    Returns:
        ParsedMessage

    Raises:
        FormsError: CODEC if there is no "#T:" or "#FORMFILENAME:" line
    """
    form_type: str | None = None
    addon_name: str | None = None
    addon_version: str | None = None
    fields: dict[str, str] = {}
    field_name: str | None = None
    field_value = ""

    for line in _LINE_BREAKS.split(message):
        if not line:
            continue
        start = 0
        if field_name is None:
            first = line[0]
            if first == "!":
                if line == END_OF_ADDON:
                    break
                if addon_name is None:
                    addon_name = _ADDON_LINE.match(line).group(1)
            elif first == "#":
                found = _FORM_TYPE_LINE.match(line)
                if found and form_type is None:
                    form_type = found.group(2).strip()
                found = _VERSION_LINE.match(line)
                if found and addon_version is None:
                    addon_version = found.group(2).strip()
            else:
                colon = line.find(":")
                if colon >= 0:
                    field_name = line[:colon]
                    bracket = line.find("[", colon + 1)
                    start = bracket if bracket >= 0 else len(line)
        if field_name is not None:
            field_value += line[start:]
            value = unbracket_data(field_value)
            if value is not None:
                fields[to_short_name(field_name)] = value
                field_name = None
                field_value = ""

    if not form_type:
        raise FormsError(
            ErrorKind.CODEC,
            "I don't know what form to display, since the message doesn't"
            ' contain a line that starts with "#T:" or "#FORMFILENAME:".',
        )
    return ParsedMessage(
        form_type=form_type,
        fields=fields,
        addon_name=addon_name,
        addon_version=addon_version,
    )


# =============================================================================
# Subject
# =============================================================================


def get_meta_contents(page: str) -> dict[str, str]:
    """
    Collect <meta name="..." content="..."> pairs from an HTML page.

    Example:
        <meta name="pack-it-forms-subject-suffix" content="_ICS213_{{field:10.subject}}">
    """
    values: dict[str, str] = {}
    for tag in _META_TAG.finditer(page):
        content = _META_CONTENT.search(tag.group(0))
        if content:
            values[html.unescape(tag.group(1))] = html.unescape(content.group(1))
    return values


def expand_template(template: str, fields: dict[str, str]) -> str:
    """Replace each {{field:name}} with the value of its short name."""
    return _FIELD_PLACEHOLDER.sub(
        lambda found: fields.get(to_short_name(found.group(1))) or "",
        template,
    )


def read_form_template(forms_dir: Path, form_type: str) -> str:
    """
    Read a form template file.

    Raises:
        FormsError: CONFIGURATION if the form isn't installed
    """
    try:
        return (forms_dir / form_type).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise FormsError(
            ErrorKind.CONFIGURATION,
            f"I don't know about a form named {form_type!r}. Perhaps the message"
            " came from a newer version of the add-on, so it might help to"
            " install the latest version.",
            form_type=form_type,
            error=str(e),
        ) from e


def subject_from_message(parsed: ParsedMessage, forms_dir: Path) -> str:
    """
    Compute the subject line the host should use for a message.

    The form template may declare the subject with <meta> tags
    pack-it-forms-subject-prefix and pack-it-forms-subject-suffix.
    The result contains only printable ASCII; anything else becomes "~".

    Args:
        parsed: decoded message (not modified)
        forms_dir: folder that contains the form templates

    Returns:
        subject line
    """
    fields = dict(parsed.fields)
    handling = fields.get(HANDLING_FIELD)
    fields[HANDLING_FIELD] = handling[0] if handling else DEFAULT_HANDLING

    meta = get_meta_contents(read_form_template(forms_dir, parsed.form_type))
    prefix = meta.get(SUBJECT_PREFIX_META) or DEFAULT_SUBJECT_PREFIX
    suffix = meta.get(SUBJECT_SUFFIX_META) or DEFAULT_SUBJECT_SUFFIX
    return _NOT_PRINTABLE_ASCII.sub("~", expand_template(prefix + suffix, fields))
