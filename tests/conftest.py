"""
Pytest Configuration and HTML Report Hooks

Puts the project root on the import path, registers the ``test_meta``
marker, and customizes the pytest-html report with a test description
column (description, goal, passing criteria from the marker) and a plot
column for figures attached by the tests.
"""

import sys
from html import escape
from pathlib import Path

import pytest

# Project root, one level above the tests/ folder
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _report_name_from_args(args):
    """
    Pick the HTML report filename from the pytest command-line arguments.

    A single test file "test_<topic>.py" gives "report_<topic>.html";
    anything else gives "report_all.html".

    :param args: Command-line arguments passed to pytest.
    :return: Report filename.
    """
    test_files = {}
    for arg in args:
        text = str(arg)
        if text.startswith("-"):
            continue
        # Drop any "::test_name" node suffix
        path = Path(text.split("::", 1)[0])
        if path.suffix == ".py" and path.name.startswith("test_"):
            test_files[str(path).lower()] = path

    if len(test_files) == 1:
        topic = next(iter(test_files.values())).stem.removeprefix("test_")
        if topic:
            return f"report_{topic}.html"
    return "report_all.html"


@pytest.hookimpl(tryfirst=True)
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "test_meta(description, goal, passing_criteria): human-readable test metadata for the HTML report",
    )

    # Respect an explicit --html path
    if any(str(arg).startswith("--html") for arg in config.invocation_params.args):
        return

    report_dir = ROOT / "tests" / "test_reports"
    report_dir.mkdir(parents=True, exist_ok=True)
    config.option.htmlpath = str(report_dir / _report_name_from_args(config.invocation_params.args))


# Rows of the "Test Description" cell, in display order
_META_LABELS = (
    ("description", "Test Description"),
    ("goal", "Test Goal"),
    ("passing_criteria", "Passing Criteria"),
)


def pytest_html_results_table_header(cells):
    cells.insert(3, '<th class="col-testmeta">Test Description</th>')
    cells.insert(4, '<th class="col-plot">Plot</th>')


def _format_test_meta(report):
    meta = getattr(report, "test_meta", None)
    if not meta:
        return '<div style="color:#666;">n/a</div>'

    rows = "".join(
        f"<div><strong>{label}:</strong> {escape(str(meta.get(key, '')))}</div>"
        for key, label in _META_LABELS
    )
    return f'<div style="min-width:340px;max-width:520px;line-height:1.35;">{rows}</div>'


def _image_source(content):
    # pytest-html keeps inline PNG extras as bare base64
    if content.startswith(("data:", "http://", "https://")) or content.endswith(".png"):
        return content
    return f"data:image/png;base64,{content}"


def pytest_html_results_table_row(report, cells):
    cells.insert(3, f'<td class="col-testmeta">{_format_test_meta(report)}</td>')

    plots = []
    for extra in getattr(report, "extras", []):
        content = extra.get("content")
        if extra.get("format_type") != "image" or not content:
            continue
        src = _image_source(content)
        plots.append(
            f'<a href="{src}" target="_blank" rel="noopener noreferrer">'
            f'<img src="{src}" alt="{escape(extra.get("name") or "plot")}" '
            f'style="max-width:320px;height:auto;display:block;margin:4px 0;" /></a>'
        )
    cells.insert(4, f'<td class="col-plot">{"".join(plots)}</td>')


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Copy the ``test_meta`` marker and any attached plots onto the call-phase report.
    """
    outcome = yield
    report = outcome.get_result()
    if report.when != "call":
        return

    marker = item.get_closest_marker("test_meta")
    if marker:
        report.test_meta = {key: marker.kwargs.get(key, "") for key, _ in _META_LABELS}

    item_extra = getattr(item, "extra", None)
    if not item_extra:
        return

    extras = getattr(report, "extras", [])
    extras.extend([dict(extra) for extra in item_extra])
    report.extras = extras
    # Older pytest-html versions read report.extra
    if hasattr(report, "extra"):
        report.extra = extras
