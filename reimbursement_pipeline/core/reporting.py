"""
CSV, Excel and print-ready PDF export of the ledger.
"""

import csv
import datetime as dt
import io
from collections import defaultdict
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from .finance import to_cents
from .models import LineItem, IMAGE_SLOTS
from .utils import money_fmt, decode_data_url

CSV_COLUMNS = [
    "date", "category", "description", "item_name", "specification", "unit",
    "quantity", "unit_price", "subtotal", "tax_rate", "tax", "amount",
    "invoice_number", "buyer_name", "seller_name", "remarks", "file_hash",
]

# Default visible columns of the exported form
XLSX_COLUMNS = [
    "date", "category", "description", "invoice_number", "seller_name",
    "subtotal", "tax", "amount", "remarks", "preview_url",
]

COLUMN_LABELS = {
    "date": "Date",
    "category": "Category",
    "description": "Description",
    "item_name": "Item",
    "specification": "Specification",
    "unit": "Unit",
    "quantity": "Qty",
    "unit_price": "Unit Price",
    "subtotal": "Subtotal",
    "tax_rate": "Tax Rate",
    "tax": "Tax",
    "amount": "Amount",
    "total_with_tax": "Total (incl. tax)",
    "invoice_number": "Invoice No.",
    "buyer_name": "Buyer",
    "seller_name": "Seller",
    "remarks": "Remarks",
    "reimburser": "Reimburser",
    "project": "Project",
    "file_hash": "File Hash",
    "preview_url": "Invoice",
    "order_image": "Order Screenshot",
    "payment_proof": "Payment Proof",
    "attachments": "Attachments",
}

MONEY_COLUMNS = {"subtotal", "tax", "amount", "total_with_tax", "unit_price"}


def write_csv(items: List[LineItem], out_csv: Path):
    """Write ledger rows to CSV file."""
    with out_csv.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        w.writeheader()
        for item in items:
            row = item.to_dict()
            w.writerow({k: row.get(k) if row.get(k) is not None else "" for k in CSV_COLUMNS})


def _slot_images(value) -> List[bytes]:
    """Raw bytes of the embeddable (data URL) references in an image slot."""
    refs = value if isinstance(value, list) else [value]
    images = []
    for ref in refs:
        if isinstance(ref, str) and ref.startswith("data:image"):
            try:
                images.append(decode_data_url(ref)[1])
            except ValueError as e:
                print(f"[WARN] Skipping unreadable image reference: {e}")
    return images


def _thumbnail(raw: bytes, max_w: int, max_h: int):
    from openpyxl.drawing.image import Image as XLImage

    img = XLImage(io.BytesIO(raw))
    scale = min(max_w / img.width, max_h / img.height, 1.0)
    img.width, img.height = int(img.width * scale) or 1, int(img.height * scale) or 1
    return img


def write_xlsx(items: List[LineItem], out_xlsx: Path,
               info: Optional[Dict[str, str]] = None,
               columns: Optional[List[str]] = None,
               title: str = "Expense Reimbursement Form"):
    """
    Write the ledger as a formatted Excel workbook.

    Layout: title, header info and payment info rows merged across the
    visible columns, a spacer, the column header, one row per item and a
    total row. ``data:`` image references are embedded as thumbnails.
    """
    from openpyxl import Workbook
    from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
    from openpyxl.utils import get_column_letter

    info = info or {}
    columns = [c for c in (columns or XLSX_COLUMNS) if c in COLUMN_LABELS]
    if not columns:
        raise ValueError("No exportable columns selected")
    last_col = get_column_letter(len(columns))

    wb = Workbook()
    ws = wb.active
    ws.title = "Reimbursement"

    thin = Side(style="thin")
    box = Border(top=thin, left=thin, bottom=thin, right=thin)

    ws.append([title])
    ws.merge_cells(f"A1:{last_col}1")
    ws.row_dimensions[1].height = 30
    ws["A1"].font = Font(size=18, bold=True)
    ws["A1"].alignment = Alignment(horizontal="center", vertical="center")

    ws.append([
        f"Reimburser: {info.get('reimburser') or ''}    "
        f"Project: {info.get('project') or ''}    "
        f"Date: {info.get('reimbursement_date') or dt.date.today().isoformat()}"
    ])
    ws.merge_cells(f"A2:{last_col}2")
    ws.row_dimensions[2].height = 20
    ws["A2"].font = Font(size=12, bold=True)
    ws["A2"].alignment = Alignment(horizontal="center", vertical="center")

    ws.append([f"Payment info: {info.get('payment_info') or 'Not provided'}"])
    ws.merge_cells(f"A3:{last_col}3")
    ws.row_dimensions[3].height = 20
    ws["A3"].font = Font(size=12, bold=True)
    ws["A3"].alignment = Alignment(horizontal="left", vertical="center")

    ws.append([])

    ws.append([COLUMN_LABELS[c] for c in columns])
    header_row = ws.max_row
    ws.row_dimensions[header_row].height = 25
    fill = PatternFill("solid", fgColor="444444")
    font = Font(color="FFFFFF", bold=True)
    for cell in ws[header_row]:
        cell.fill = fill
        cell.font = font
        cell.alignment = Alignment(horizontal="center", vertical="center")
        cell.border = box

    for item in items:
        row = item.to_dict()
        values = []
        for col in columns:
            if col in IMAGE_SLOTS:
                values.append("")
            elif col in MONEY_COLUMNS:
                values.append(float(to_cents(row.get(col))))
            else:
                values.append(row.get(col) if row.get(col) is not None else "")
        ws.append(values)
        row_index = ws.max_row

        has_image = False
        for col_index, col in enumerate(columns, start=1):
            if col not in IMAGE_SLOTS:
                continue
            images = _slot_images(row.get(col))
            if col != "attachments":
                images = images[:1]
            for raw in images:
                try:
                    thumb = _thumbnail(raw, 40 if col == "attachments" else 60, 60)
                except Exception as e:
                    print(f"[WARN] Could not embed image for {item.description or item.id}: {e}")
                    continue
                ws.add_image(thumb, f"{get_column_letter(col_index)}{row_index}")
                has_image = True

        ws.row_dimensions[row_index].height = 80 if has_image else 25
        for cell in ws[row_index]:
            cell.alignment = Alignment(vertical="center", horizontal="left", wrap_text=True)
            cell.border = box
            if cell.column <= len(columns) and columns[cell.column - 1] in MONEY_COLUMNS:
                cell.number_format = "#,##0.00"

    total = sum((to_cents(item.amount) for item in items), Decimal("0.00"))
    total_col = columns.index("amount") if "amount" in columns else len(columns) - 1
    totals = [""] * len(columns)
    totals[0] = "Total"
    totals[total_col] = float(total)
    ws.append(totals)
    total_row = ws.max_row
    ws.row_dimensions[total_row].height = 30
    total_fill = PatternFill("solid", fgColor="FFF8E1")
    for cell in ws[total_row]:
        cell.font = Font(bold=True)
        cell.fill = total_fill
        cell.border = Border(top=Side(style="double"))
    ws.cell(row=total_row, column=total_col + 1).number_format = "#,##0.00"

    for col_index, col in enumerate(columns, start=1):
        letter = get_column_letter(col_index)
        if col in IMAGE_SLOTS:
            ws.column_dimensions[letter].width = 14
            continue
        max_len = max([len(COLUMN_LABELS[col])] +
                      [len(str(ws.cell(row=r, column=col_index).value or ""))
                       for r in range(header_row + 1, total_row + 1)])
        ws.column_dimensions[letter].width = min(max(10, max_len + 2), 50)

    wb.save(out_xlsx.as_posix())


def build_ledger_pdf(items: List[LineItem], out_pdf: Path,
                     info: Optional[Dict[str, str]] = None,
                     title: str = "Expense Reimbursement Form"):
    """
    Build a print-ready summary of the ledger.

    Args:
        items: Ledger rows
        out_pdf: Output PDF path
        info: Form header (reimburser, project, reimbursement_date)
        title: Report title
    """
    from reportlab.lib.pagesizes import A4, landscape
    from reportlab.pdfgen import canvas
    from reportlab.lib.units import inch

    info = info or {}
    category_totals = defaultdict(Decimal)
    grand_total = Decimal("0.00")
    for item in items:
        amount = to_cents(item.amount)
        category_totals[item.category or "Uncategorized"] += amount
        grand_total += amount

    page_size = landscape(A4)
    c = canvas.Canvas(out_pdf.as_posix(), pagesize=page_size)
    width, height = page_size

    def header(y: float) -> float:
        c.setFont("Helvetica-Bold", 9)
        c.drawString(0.6 * inch, y, "Date")
        c.drawString(1.5 * inch, y, "Category")
        c.drawString(2.9 * inch, y, "Description")
        c.drawString(6.4 * inch, y, "Invoice No.")
        c.drawRightString(8.6 * inch, y, "Subtotal")
        c.drawRightString(9.6 * inch, y, "Tax")
        c.drawRightString(10.9 * inch, y, "Amount")
        y -= 0.12 * inch
        c.line(0.6 * inch, y, 11.0 * inch, y)
        c.setFont("Helvetica", 9)
        return y - 0.18 * inch

    # Title block
    y = height - 0.8 * inch
    c.setFont("Helvetica-Bold", 16)
    c.drawString(0.6 * inch, y, title)
    y -= 0.3 * inch
    c.setFont("Helvetica", 10)
    c.drawString(0.6 * inch, y, f"Reimburser: {info.get('reimburser') or '-'}")
    c.drawString(3.6 * inch, y, f"Project: {info.get('project') or '-'}")
    c.drawString(6.6 * inch, y, f"Date: {info.get('reimbursement_date') or dt.date.today().isoformat()}")
    y -= 0.4 * inch

    # Category Totals
    c.setFont("Helvetica-Bold", 12)
    c.drawString(0.6 * inch, y, "Category Totals")
    y -= 0.25 * inch
    c.setFont("Helvetica", 10)
    for cat, amt in sorted(category_totals.items()):
        c.drawString(0.7 * inch, y, f"{cat}: {money_fmt(float(amt))}")
        y -= 0.2 * inch
        if y < 1.0 * inch:
            c.showPage()
            y = height - 0.8 * inch
            c.setFont("Helvetica", 10)

    # Line items
    y -= 0.2 * inch
    y = header(y)
    for item in items:
        c.drawString(0.6 * inch, y, (item.date or "")[:10])
        c.drawString(1.5 * inch, y, (item.category or "")[:20])
        c.drawString(2.9 * inch, y, (item.description or item.item_name or "")[:52])
        c.drawString(6.4 * inch, y, (item.invoice_number or "")[:20])
        c.drawRightString(8.6 * inch, y, money_fmt(float(to_cents(item.subtotal))))
        c.drawRightString(9.6 * inch, y, money_fmt(float(to_cents(item.tax))))
        c.drawRightString(10.9 * inch, y, money_fmt(float(to_cents(item.amount))))
        y -= 0.2 * inch

        if y < 0.9 * inch:
            c.showPage()
            y = header(height - 0.8 * inch)

    # Grand total
    y -= 0.1 * inch
    c.line(8.0 * inch, y + 0.12 * inch, 11.0 * inch, y + 0.12 * inch)
    c.setFont("Helvetica-Bold", 10)
    c.drawString(6.4 * inch, y, f"Total ({len(items)} item(s))")
    c.drawRightString(10.9 * inch, y, money_fmt(float(grand_total)))

    c.showPage()
    c.save()
