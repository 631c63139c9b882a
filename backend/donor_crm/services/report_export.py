import html
import logging
from dataclasses import dataclass
from typing import List, Optional

import pandas as pd

from donor_crm.models.report import Report, ReportDefinition
from donor_crm.services.access import Caller
from donor_crm.services.errors import ReportExportError
from donor_crm.services.report_engine import ComponentResult, ReportEngine

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ["key", "sumAmount", "count"]
SUMMARY_HEADERS = {"key": "Key", "sumAmount": "Total Amount", "count": "Count"}

PDF_NOT_SUPPORTED = "PDF export requires enabling a PDF renderer. Please enable PDF support."
UNSUPPORTED_FORMAT = "Unsupported format. Use csv, xls, or doc."


@dataclass
class ExportedReport:
    content: bytes
    media_type: str
    filename: str


def summary_frame(result: ComponentResult) -> pd.DataFrame:
    records = [
        {
            "key": row.get("key"),
            "sumAmount": row.get("sumAmount") or 0,
            "count": row.get("count") or row.get("donorCount") or 0,
        }
        for row in result.rows
    ]
    return pd.DataFrame(records, columns=SUMMARY_COLUMNS)


def detail_frame(result: ComponentResult) -> pd.DataFrame:
    return pd.DataFrame(result.rows, columns=result.headers or [])


def _csv(frame: pd.DataFrame) -> str:
    return frame.to_csv(index=False).rstrip("\n")


def render_csv(components: List[ComponentResult], selected: Optional[ComponentResult]) -> str:
    """
    Single component reports export as one plain CSV.
    Anything larger is written as '# title' sections separated by blank lines.
    """
    sections = []
    if len(components) <= 1:
        first = components[0] if components else ComponentResult()
        sections.append(_csv(summary_frame(first)))
    else:
        for component in components:
            sections.append(f"# {component.title or 'Section'}")
            sections.append(_csv(summary_frame(component)))
            sections.append("")
    if selected is not None:
        sections.append(f"# {selected.title}")
        sections.append(_csv(detail_frame(selected)))
    return "\n".join(sections)


def _html_table(result: ComponentResult, frame: pd.DataFrame) -> str:
    table = frame.to_html(index=False, border=1, na_rep="")
    return f'<h3 style="margin:8px 0;">{html.escape(result.title or "Section")}</h3>\n{table}'


def render_html(name: str, components: List[ComponentResult], selected: Optional[ComponentResult], heading: bool = False) -> str:
    tables = [_html_table(c, summary_frame(c).rename(columns=SUMMARY_HEADERS)) for c in components]
    if selected is not None:
        tables.append(_html_table(selected, detail_frame(selected)))
    body = "\n".join(tables)
    title = html.escape(name)
    if heading:
        body = f"<h2>{title}</h2>\n{body}"
    return f'<!DOCTYPE html><html><head><meta charset="utf-8"><title>{title}</title></head><body>{body}</body></html>'


async def export_report(report: Report, caller: Caller, fmt: str = "csv") -> ExportedReport:
    fmt = (fmt or "csv").lower()
    if fmt == "pdf":
        raise ReportExportError(PDF_NOT_SUPPORTED)
    if fmt not in ("csv", "xls", "doc", "word"):
        raise ReportExportError(UNSUPPORTED_FORMAT)

    definition = ReportDefinition(
        type=report.type,
        filters=report.filters,
        fields=report.fields,
        components=report.components,
    )
    tables = await ReportEngine(caller).build_export_tables(definition)
    # selected fields, when requested, always come last
    selected = tables.pop() if definition.fields else None
    name = report.name or "report"
    logger.info(f"[REPORT] Exporting '{name}' as {fmt} ({len(tables)} components)")

    if fmt == "csv":
        content = render_csv(tables, selected)
        return ExportedReport(content.encode("utf-8"), "text/csv", f"{name}.csv")
    if fmt == "xls":
        content = render_html(name, tables, selected)
        return ExportedReport(content.encode("utf-8"), "application/vnd.ms-excel", f"{name}.xls")
    content = render_html(name, tables, selected, heading=True)
    return ExportedReport(content.encode("utf-8"), "application/msword", f"{name}.doc")
