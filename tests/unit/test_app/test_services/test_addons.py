"""
test_addons.py - installed add-ons and their menu entries
"""

from pathlib import Path

from outpost_forms.app.services.addons import (
    AddonForm,
    get_addon_names,
    list_addon_forms,
    parse_launch_line,
)
from outpost_forms.domain.schemas import DaemonPaths


class TestGetAddonNames:
    """get_addon_names."""

    def test_launch_files_only(self, paths: DaemonPaths):
        assert get_addon_names(paths.addons_dir) == ["SCCoPIFO"]

    def test_sorted_case_insensitive(self, tmp_path: Path):
        for name in ("beta.launch", "Alpha.launch", "gamma.ini"):
            (tmp_path / name).write_text("", encoding="utf-8")

        assert get_addon_names(tmp_path) == ["Alpha", "beta"]

    def test_missing_dir(self, tmp_path: Path):
        assert get_addon_names(tmp_path / "nope") == []


class TestParseLaunchLine:
    """parse_launch_line."""

    def test_options(self):
        form = parse_launch_line(
            "ADDON -fn ICS-213_Message_Form -a SCCoPIFO -t form-ics213.html"
        )

        assert form == AddonForm("SCCoPIFO", "form-ics213.html", "ICS-213_Message_Form")
        assert form.value == "SCCoPIFO form-ics213.html"
        assert form.label == "ICS-213 Message Form"

    def test_value_with_spaces(self):
        form = parse_launch_line("ADDON -a SCCoPIFO -t form-x.html -fn Two Words")

        assert form.display_name == "Two Words"

    def test_label_without_display_name(self):
        assert parse_launch_line("ADDON -a A -t form-x.html").label == "form-x.html"


class TestListAddonForms:
    """list_addon_forms."""

    def test_incomplete_lines_skipped(self, paths: DaemonPaths):
        forms = list_addon_forms(paths.addons_dir)

        assert [form.form_type for form in forms] == [
            "form-ics213.html",
            "form-check-in.html",
        ]
