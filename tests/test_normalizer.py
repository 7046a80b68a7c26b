"""Tests for file normalization."""

import base64
from unittest.mock import patch

import pytest

from conftest import PNG_BYTES, make_docx, make_pdf, make_xlsx, make_zip
from claude_chat.core import ArchiveBundle, DocumentBlock, ExtractedText, ImageBlock
from claude_chat.errors import FileEmpty, FileProcessingError
from claude_chat.normalizer import detect_kind, normalize, normalize_upload


class TestDetectKind:
    def test_mime_wins_over_extension(self):
        assert detect_kind("photo.txt", "image/png") == ("image", "image/png")

    def test_extension_fallback_when_mime_missing(self):
        assert detect_kind("report.PDF", None)[0] == "pdf"
        assert detect_kind("sheet.xlsx", "")[0] == "excel"
        assert detect_kind("pic.jpg", "application/octet-stream") == ("image", "image/jpeg")

    def test_zip_in_mime_means_archive(self):
        assert detect_kind("bundle", "application/x-zip-compressed")[0] == "archive"

    def test_office_mime_needs_office_extension(self):
        assert detect_kind("data.csv", "application/vnd.ms-excel") == (None, None)
        assert detect_kind("book.xlsx", "application/vnd.ms-excel") == ("excel", "application/vnd.ms-excel")
        assert detect_kind("book", "application/vnd.ms-excel")[0] == "xls"

    def test_unknown(self):
        assert detect_kind("notes.md", "text/markdown") == (None, None)


def test_image_round_trip():
    result = normalize("logo.png", "image/png", PNG_BYTES)
    assert isinstance(result, ImageBlock)
    assert result.media_type == "image/png"
    assert result.file_name == "logo.png"
    assert base64.b64decode(result.data) == PNG_BYTES


def test_pdf_is_native_by_default():
    pdf = make_pdf()
    result = normalize("doc.pdf", "application/pdf", pdf)
    assert isinstance(result, DocumentBlock)
    assert base64.b64decode(result.data) == pdf


def test_pdf_as_text_extracts_pages():
    result = normalize("doc.pdf", "application/pdf", make_pdf(pages=2), pdf_as_text=True)
    assert isinstance(result, ExtractedText)
    assert result.metadata == {"type": "PDF", "pages": 2}


def test_corrupt_pdf_as_text_is_file_error():
    with pytest.raises(FileProcessingError) as exc:
        normalize("broken.pdf", "application/pdf", b"not a pdf", pdf_as_text=True)
    assert exc.value.file_name == "broken.pdf"


def test_docx_paragraphs_and_tables():
    data = make_docx(["First paragraph", "Second paragraph"], table_rows=[["a", "b"], ["c", "d"]])
    result = normalize("letter.docx", None, data)
    assert isinstance(result, ExtractedText)
    assert result.text == "First paragraph\nSecond paragraph\na\tb\nc\td"
    assert result.metadata == {"type": "Word"}


def test_xlsx_sheets_as_csv():
    data = make_xlsx({"Data": [["name", "qty"], ["apple", 3]], "Empty": []})
    result = normalize("book.xlsx", None, data)
    assert isinstance(result, ExtractedText)
    assert "=== Sheet: Data ===\nname,qty\napple,3\n" in result.text
    assert "=== Sheet: Empty ===" in result.text
    assert result.metadata == {"type": "Excel", "sheets": 2}


class FakeSheet:
    def __init__(self, name, rows):
        self.name = name
        self.rows = rows
        self.nrows = len(rows)

    def row_values(self, index):
        return self.rows[index]


class FakeBook:
    def __init__(self, *sheets):
        self.sheets = sheets
        self.nsheets = len(sheets)
        self.released = False

    def sheet_by_index(self, index):
        return self.sheets[index]

    def release_resources(self):
        self.released = True


def test_xls_sheets_as_csv():
    book = FakeBook(FakeSheet("Legacy", [["name", "qty"], ["pear", 2.0]]))
    with patch("claude_chat.extractors.office.xlrd.open_workbook", return_value=book) as open_workbook:
        result = normalize("old.xls", "application/vnd.ms-excel", b"\xd0\xcf\x11\xe0")
    assert open_workbook.call_args.kwargs["file_contents"] == b"\xd0\xcf\x11\xe0"
    assert result.text == "=== Sheet: Legacy ===\nname,qty\npear,2.0\n\n\n"
    assert result.metadata == {"type": "Excel", "sheets": 1}
    assert book.released


def test_corrupt_xls_is_file_error():
    with pytest.raises(FileProcessingError, match="Could not extract text"):
        normalize("old.xls", None, b"not a workbook")


def test_legacy_doc_rejected():
    with pytest.raises(FileProcessingError, match="save as .docx"):
        normalize("old.doc", "application/msword", b"\xd0\xcf\x11\xe0")


def test_csv_labelled_as_excel_reads_as_text():
    result = normalize_upload("data.csv", "application/vnd.ms-excel", b"a,b\n1,2\n")
    assert isinstance(result, ExtractedText)
    assert result.text == "a,b\n1,2"


def test_zip_becomes_bundle():
    data = make_zip({"a.txt": "alpha"})
    result = normalize("files.zip", "application/zip", data)
    assert isinstance(result, ArchiveBundle)
    assert result.text_entries == [("a.txt", "alpha")]


def test_unknown_type_returns_none():
    assert normalize("notes.md", "text/markdown", b"# hi") is None


def test_upload_falls_back_to_text():
    result = normalize_upload("notes.md", "text/markdown", b"  # Title\nbody  \n")
    assert isinstance(result, ExtractedText)
    assert result.text == "# Title\nbody"
    assert result.source_name == "notes.md"


def test_upload_empty_file():
    with pytest.raises(FileEmpty) as exc:
        normalize_upload("blank.txt", "text/plain", b"   \n")
    assert exc.value.message == "blank.txt: The file is empty"
