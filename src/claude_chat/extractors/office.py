"""Word and Excel text extraction."""

import csv
import io

import xlrd
from docx import Document
from openpyxl import load_workbook


def extract_docx_text(data: bytes) -> tuple[str, dict]:
    """Extract paragraphs, then table rows, from a .docx file."""
    doc = Document(io.BytesIO(data))
    parts = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells]
            if any(cells):
                parts.append("\t".join(cells))
    return "\n".join(parts), {"type": "Word"}


def _sheet_section(title: str, rows) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for row in rows:
        writer.writerow(["" if c is None else c for c in row])
    return f"=== Sheet: {title} ===\n{buf.getvalue()}\n\n"


def extract_xlsx_text(data: bytes) -> tuple[str, dict]:
    """Render every sheet as CSV under a ``=== Sheet: <name> ===`` header."""
    wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        sections = [_sheet_section(ws.title, ws.iter_rows(values_only=True)) for ws in wb.worksheets]
        return "".join(sections), {"type": "Excel", "sheets": len(wb.sheetnames)}
    finally:
        wb.close()


def extract_xls_text(data: bytes) -> tuple[str, dict]:
    """Same rendering as ``extract_xlsx_text``, for legacy BIFF .xls workbooks."""
    book = xlrd.open_workbook(file_contents=data, on_demand=True)
    try:
        sections = []
        for index in range(book.nsheets):
            sheet = book.sheet_by_index(index)
            rows = (sheet.row_values(r) for r in range(sheet.nrows))
            sections.append(_sheet_section(sheet.name, rows))
        return "".join(sections), {"type": "Excel", "sheets": book.nsheets}
    finally:
        book.release_resources()
