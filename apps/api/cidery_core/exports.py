"""CSV and PDF renderings of the TTB trace report and purchase reports."""
from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

from cidery_core.models import PRODUCT_TYPES

SUMMARY_COLUMNS = [
    ("product_type", "Product Type"),
    ("ttb_tax_class", "TTB Tax Class"),
    ("batch_count", "Batches"),
    ("opening_balance_liters", "Opening (L)"),
    ("production_liters", "Production (L)"),
    ("receipts_liters", "Receipts (L)"),
    ("blended_in_liters", "Blended In (L)"),
    ("total_source_liters", "Total Source (L)"),
    ("packaged_liters", "Packaged (L)"),
    ("distilled_liters", "Distilled (L)"),
    ("blended_out_liters", "Blended Out (L)"),
    ("losses_liters", "Losses (L)"),
    ("ending_balance_liters", "Ending (L)"),
    ("total_destination_liters", "Total Destination (L)"),
    ("discrepancy_liters", "Discrepancy (L)"),
    ("is_balanced", "Balanced"),
]

BATCH_COLUMNS = [
    ("batch_number", "Batch #"),
    ("name", "Name"),
    ("product_type", "Type"),
    ("status", "Status"),
    ("vessel_name", "Vessel"),
    ("opening_liters", "Opening (L)"),
    ("ending_liters", "Ending (L)"),
    ("current_volume_liters", "Recorded (L)"),
    ("ledger_volume_liters", "Ledger (L)"),
]

DISCREPANCY_COLUMNS = [
    ("type", "Type"),
    ("batch_number", "Batch #"),
    ("batch_name", "Batch"),
    ("product_type", "Product Type"),
    ("volume_affected_liters", "Volume (L)"),
    ("description", "Description"),
    ("suggested_action", "Suggested Action"),
]


def _fmt(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float):
        return f"{value:.3f}".rstrip("0").rstrip(".") if value % 1 else f"{value:.0f}"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _rows(records: list[dict], columns) -> list[list[str]]:
    return [[_fmt(r.get(key)) for key, _ in columns] for r in records]


def _header(columns) -> list[str]:
    return [label for _, label in columns]


def _summary_records(report: dict) -> list[dict]:
    records = [report["summaries"][pt] for pt in PRODUCT_TYPES]
    records.extend(report["combined"].values())
    return records


def trace_report_csv(report: dict) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)

    w.writerow(["TTB Batch Trace Report", report["period"]["start"], report["period"]["end"]])
    w.writerow([])
    w.writerow(_header(SUMMARY_COLUMNS))
    w.writerows(_rows(_summary_records(report), SUMMARY_COLUMNS))

    g = report["grand_summary"]
    w.writerow([])
    w.writerow(["Total Batches", "Total Source (L)", "Total Destination (L)", "Total Discrepancy (L)", "Balanced"])
    w.writerow([_fmt(g["total_batches"]), _fmt(g["total_source_liters"]), _fmt(g["total_destination_liters"]),
                _fmt(g["total_discrepancy_liters"]), _fmt(g["is_balanced"])])

    w.writerow([])
    w.writerow(_header(BATCH_COLUMNS))
    for pt in PRODUCT_TYPES:
        w.writerows(_rows(report["batches_by_type"][pt], BATCH_COLUMNS))

    if report["discrepancies"]:
        w.writerow([])
        w.writerow(_header(DISCREPANCY_COLUMNS))
        w.writerows(_rows(report["discrepancies"], DISCREPANCY_COLUMNS))

    return buf.getvalue()


VENDOR_ITEM_COLUMNS = [
    ("vendor_name", "Vendor"),
    ("purchase_date", "Date"),
    ("invoice_number", "Invoice"),
    ("variety_name", "Variety"),
    ("quantity", "Quantity"),
    ("unit", "Unit"),
    ("quantity_kg", "Quantity (kg)"),
    ("price_per_unit", "Price / Unit"),
    ("total_cost", "Total Cost"),
]


def vendor_purchase_csv(report: dict) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(_header(VENDOR_ITEM_COLUMNS))
    for v in report["vendors"]:
        for item in v["items"]:
            w.writerow([_fmt(({"vendor_name": v["vendor_name"]} | item).get(k)) for k, _ in VENDOR_ITEM_COLUMNS])
        w.writerow([f"{v['vendor_name']} total", "", "", "", "", "", _fmt(v["total_kg"]), "", f"{v['total_cost']:.2f}"])
    w.writerow(["Grand total", "", "", "", "", "", _fmt(report["grand_total_kg"]), "",
                f"{report['grand_total_cost']:.2f}"])
    return buf.getvalue()


# --- PDF ---------------------------------------------------------------

def _table(data: list[list[str]], font_size: int = 7) -> Table:
    t = Table(data, hAlign="LEFT", repeatRows=1)
    t.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), font_size),
        ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.whitesmoke, colors.white]),
    ]))
    return t


def build_table_pdf(title: str, meta_lines: list[str], sections: list[tuple[str, list[str], list[list[str]]]]) -> bytes:
    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=landscape(letter),
        leftMargin=24,
        rightMargin=24,
        topMargin=24,
        bottomMargin=24,
        title=title,
    )

    styles = getSampleStyleSheet()
    story: list = []

    story.append(Paragraph(title, styles["Title"]))
    story.append(Paragraph(f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M')} UTC", styles["Normal"]))
    for line in meta_lines:
        story.append(Paragraph(line, styles["Normal"]))
    story.append(Spacer(1, 10))

    for heading, header, rows in sections:
        story.append(Paragraph(f"<b>{escape(heading)}</b>", styles["Heading3"]))
        if rows:
            story.append(_table([header] + rows))
        else:
            story.append(Paragraph("None", styles["Normal"]))
        story.append(Spacer(1, 10))

    doc.build(story)
    return buf.getvalue()


def trace_report_pdf(report: dict) -> bytes:
    g = report["grand_summary"]
    d = report["distillery_operations"]
    meta = [
        f"<b>Period:</b> {report['period']['start']} to {report['period']['end']}",
        f"<b>Total source:</b> {g['total_source_liters']:,.1f} L &nbsp; "
        f"<b>Total destination:</b> {g['total_destination_liters']:,.1f} L &nbsp; "
        f"<b>Discrepancy:</b> {g['total_discrepancy_liters']:,.1f} L &nbsp; "
        f"<b>Balanced:</b> {_fmt(g['is_balanced'])}",
        f"<b>Sent to distillery:</b> {d['cider_sent_liters']:,.1f} L &nbsp; "
        f"<b>Brandy received:</b> {d['brandy_received_liters']:,.1f} L &nbsp; "
        f"<b>Pending returns:</b> {len(d['pending_returns'])}",
    ]
    batches = [b for pt in PRODUCT_TYPES for b in report["batches_by_type"][pt]]
    sections = [
        ("Balance by Product Type", _header(SUMMARY_COLUMNS), _rows(_summary_records(report), SUMMARY_COLUMNS)),
        ("Batches", _header(BATCH_COLUMNS), _rows(batches, BATCH_COLUMNS)),
        ("Discrepancies", _header(DISCREPANCY_COLUMNS), _rows(report["discrepancies"], DISCREPANCY_COLUMNS)),
    ]
    return build_table_pdf("TTB Batch Trace Report", meta, sections)


def vendor_purchase_pdf(report: dict) -> bytes:
    meta = [
        f"<b>Period:</b> {report['period']['start']} to {report['period']['end']}",
        f"<b>Vendors:</b> {report['vendor_count']} &nbsp; <b>Purchases:</b> {report['purchase_count']}",
        f"<b>Total weight:</b> {report['grand_total_kg']:,.1f} kg &nbsp; "
        f"<b>Total cost:</b> ${report['grand_total_cost']:,.2f}",
    ]
    sections = []
    for v in report["vendors"]:
        rows = _rows([{"vendor_name": v["vendor_name"]} | i for i in v["items"]], VENDOR_ITEM_COLUMNS)
        rows.append(["Total", "", "", "", "", "", _fmt(v["total_kg"]), "", f"{v['total_cost']:.2f}"])
        sections.append((v["vendor_name"], _header(VENDOR_ITEM_COLUMNS), rows))
    return build_table_pdf("Apple Purchases by Vendor", meta, sections)
