from datetime import datetime

import pytest

from donor_crm.models.report import Report, ReportComponent
from donor_crm.services.access import Caller
from donor_crm.services.errors import ReportExportError
from donor_crm.services.report_engine import ComponentResult
from donor_crm.services.report_export import export_report, render_csv, render_html
from factories import make_contact, make_donation, make_organization

ADMIN = Caller(user_id="admin", role="admin")


def _summary(title, rows):
    return ComponentResult(title=title, kind="table", rows=rows)


def test_single_component_csv_is_plain():
    csv = render_csv([_summary("By month", [{"key": "2024-01", "sumAmount": 150, "count": 2}])], None)
    assert csv == "key,sumAmount,count\n2024-01,150,2"


def test_empty_report_csv_has_only_header():
    assert render_csv([], None) == "key,sumAmount,count"


def test_multi_component_csv_has_titled_sections():
    csv = render_csv(
        [
            _summary("Totals", [{"key": "All", "sumAmount": 500, "count": 4}]),
            _summary("Donors", [{"key": "Pune", "sumAmount": 300, "donorCount": 2}]),
        ],
        ComponentResult(title="Selected Fields", headers=["Donor Name", "City"], rows=[{"Donor Name": "Asha Rao", "City": "Pune"}]),
    )
    assert csv.split("\n") == [
        "# Totals",
        "key,sumAmount,count",
        "All,500,4",
        "",
        "# Donors",
        "key,sumAmount,count",
        "Pune,300,2",
        "",
        "# Selected Fields",
        "Donor Name,City",
        "Asha Rao,Pune",
    ]


def test_html_export_titles_each_table():
    html = render_html("Quarterly", [_summary("Totals", [{"key": "All", "sumAmount": 500, "count": 4}])], None, heading=True)
    assert html.startswith("<!DOCTYPE html>")
    assert "<h2>Quarterly</h2>" in html
    assert "Totals</h3>" in html
    assert "<th>Total Amount</th>" in html
    assert "<td>500</td>" in html


def _report(org, components):
    return Report(name="Quarterly", type="donation", organization=org.id, components=components)


@pytest.mark.parametrize(
    "fmt, media_type, filename",
    [
        ("csv", "text/csv", "Quarterly.csv"),
        ("xls", "application/vnd.ms-excel", "Quarterly.xls"),
        ("doc", "application/msword", "Quarterly.doc"),
        ("word", "application/msword", "Quarterly.doc"),
    ],
)
def test_export_formats(run_db, fmt, media_type, filename):
    async def scenario():
        org = await make_organization()
        donor = await make_contact(org)
        await make_donation(org, donor, 100, datetime(2024, 1, 10))
        report = _report(org, [ReportComponent(id="c1", title="Totals")])
        return await export_report(report, ADMIN, fmt)

    exported = run_db(scenario)
    assert exported.media_type == media_type
    assert exported.filename == filename
    if fmt == "csv":
        assert exported.content.decode("utf-8") == "key,sumAmount,count\nAll,100.0,1"
    else:
        assert b"Totals" in exported.content


@pytest.mark.parametrize("fmt, message", [("pdf", "PDF"), ("pptx", "Unsupported format. Use csv, xls, or doc.")])
def test_export_rejects_unsupported_formats(run_db, fmt, message):
    async def scenario():
        org = await make_organization()
        with pytest.raises(ReportExportError, match=message):
            await export_report(_report(org, []), ADMIN, fmt)

    run_db(scenario)


def test_html_export_escapes_titles():
    html = render_html(
        "Q1 <script>", [_summary("<b>Cash & UPI</b>", [{"key": "<i>upi</i>", "sumAmount": 1, "count": 1}])], None, heading=True
    )
    assert "<title>Q1 &lt;script&gt;</title>" in html
    assert "<h2>Q1 &lt;script&gt;</h2>" in html
    assert "&lt;b&gt;Cash &amp; UPI&lt;/b&gt;</h3>" in html
    assert "<b>" not in html
    assert "<i>" not in html
