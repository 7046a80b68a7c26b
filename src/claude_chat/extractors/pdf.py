"""PDF page text extraction."""

from io import BytesIO

from pypdf import PdfReader


def extract_pdf_text(data: bytes) -> tuple[str, dict]:
    """Return the text of every page, one ``\\n`` between pages."""
    reader = PdfReader(BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n".join(pages), {"type": "PDF", "pages": len(pages)}
