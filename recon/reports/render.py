"""Deterministic HTML/JSON rendering of reconciliation reports."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

from jinja2 import Environment, FileSystemLoader

from recon.amounts import format_amount

if TYPE_CHECKING:
    from recon.batch import BatchReport
    from recon.outcomes import OperationReport


def _get_template_env() -> Environment:
    """Get Jinja2 environment with deterministic settings."""
    template_dir = Path(__file__).parent / "templates"
    env = Environment(
        loader=FileSystemLoader(template_dir),
        autoescape=True,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["amount"] = format_amount
    return env


def render_batch_report(
    report: BatchReport, *, title: str = "Ledger reconciliation", as_of: str = ""
) -> str:
    """Render a batch report as a standalone HTML page.

    Args:
        report: Outcome of a reconciliation run
        title: Page heading
        as_of: Reference date shown in the header

    Returns:
        HTML string; identical input gives identical output
    """
    template = _get_template_env().get_template("batch_report.html.j2")
    return template.render(
        title=title,
        as_of=as_of,
        report=report,
        samples=report.samples,
        errors=sorted(report.errors, key=lambda e: e.entry_id),
        overpaid=sorted(report.overpaid),
    )


def report_to_json(report: BatchReport | OperationReport) -> str:
    """Serialize any report with stable key order and string decimals."""
    return json.dumps(report.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"
