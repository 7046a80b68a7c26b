"""Format-specific text extractors, keyed by the file kind the normalizer detects."""

from .office import extract_docx_text, extract_xls_text, extract_xlsx_text
from .pdf import extract_pdf_text

EXTRACTORS = {
    "word": extract_docx_text,
    "excel": extract_xlsx_text,
    "xls": extract_xls_text,
    "pdf": extract_pdf_text,
}


def get_extractor(kind: str):
    """Return the extractor for a file kind, or None if the kind carries no text.

    Each extractor takes the raw bytes and returns ``(text, metadata)``.
    """
    return EXTRACTORS.get(kind)
