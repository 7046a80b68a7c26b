"""Shared test fixtures for claude-chat."""

import io
import json
import zipfile

import httpx
import pytest

from claude_chat.store import SQLiteConversationStore

# 1x1 transparent PNG
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000001e221bc330000000049454e44ae426082"
)


def sse(*payloads) -> bytes:
    """Encode payloads as ``data:`` frames followed by ``[DONE]``."""
    frames = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def delta(text: str) -> dict:
    return {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}


def make_zip(entries: dict) -> bytes:
    """Build a zip archive in memory from ``{path: bytes | str}``."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for path, data in entries.items():
            zf.writestr(path, data)
    return buf.getvalue()


def make_7z(entries: dict) -> bytes:
    """Build a 7z archive in memory from ``{path: bytes | str}``."""
    import py7zr

    buf = io.BytesIO()
    with py7zr.SevenZipFile(buf, "w") as archive:
        for path, data in entries.items():
            archive.writestr(data, path)
    return buf.getvalue()


def make_docx(paragraphs, table_rows=()) -> bytes:
    from docx import Document

    doc = Document()
    for text in paragraphs:
        doc.add_paragraph(text)
    if table_rows:
        table = doc.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for r, row in enumerate(table_rows):
            for c, value in enumerate(row):
                table.cell(r, c).text = value
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


def make_xlsx(sheets: dict) -> bytes:
    from openpyxl import Workbook

    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def make_pdf(pages: int = 1) -> bytes:
    from pypdf import PdfWriter

    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=72, height=72)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def mock_client(handler) -> httpx.AsyncClient:
    """An AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def chunked(*chunks: bytes):
    for chunk in chunks:
        yield chunk


@pytest.fixture
def store(tmp_path):
    """An initialized SQLite store in a temporary directory."""
    s = SQLiteConversationStore(tmp_path / "chat.db")
    s.initialize()
    return s
