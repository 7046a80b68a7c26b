"""Turn an uploaded file into one canonical content unit.

Dispatch is by MIME type first and by file extension when the MIME type is
missing, generic (``application/octet-stream``) or unrecognised:

- images (jpeg/png/gif/webp) and PDFs -> native ``ImageBlock`` / ``DocumentBlock``
- PDFs with ``pdf_as_text`` -> ``ExtractedText`` with a page count
- Word (.docx) / Excel (.xlsx, .xls) -> ``ExtractedText``; legacy .doc is rejected
- zip, 7z and rar archives -> ``ArchiveBundle`` (see ``archive.py``)
- anything else -> ``None``; the caller falls back to a plain UTF-8 read
"""

import logging
import mimetypes
from pathlib import PurePosixPath

from . import archive
from .core import (
    IMAGE_MEDIA_TYPES,
    PDF_MEDIA_TYPE,
    DocumentBlock,
    ExtractedText,
    ImageBlock,
    NormalizedFile,
    encode_bytes,
)
from .errors import FileEmpty, FileProcessingError
from .extractors import get_extractor

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

MIME_KINDS = {
    PDF_MEDIA_TYPE: "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "word",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "excel",
    "application/vnd.ms-excel": "xls",
    "application/zip": "archive",
    "application/x-zip-compressed": "archive",
    "application/x-rar-compressed": "archive",
    "application/vnd.rar": "archive",
    "application/x-7z-compressed": "archive",
}

EXTENSION_KINDS = {
    ".pdf": "pdf",
    ".docx": "word",
    ".doc": "doc",
    ".xlsx": "excel",
    ".xls": "xls",
    ".zip": "archive",
    ".rar": "archive",
    ".7z": "archive",
}

OFFICE_KINDS = {"word", "doc", "excel", "xls"}


def detect_kind(name: str, mime_type: str | None) -> tuple[str | None, str | None]:
    """Return ``(kind, media_type)`` for a file, or ``(None, None)`` if unrecognised.

    Browsers label CSV and other tabular files ``application/vnd.ms-excel``, so
    an Office MIME type only counts when the extension is an Office one too
    (or missing).
    """
    mime = (mime_type or "").split(";")[0].strip().lower()
    ext = PurePosixPath(name.lower()).suffix

    if mime in IMAGE_MEDIA_TYPES:
        return "image", mime
    if mime == "image/jpg":
        return "image", "image/jpeg"
    kind = MIME_KINDS.get(mime)
    if kind in OFFICE_KINDS and ext:
        ext_kind = EXTENSION_KINDS.get(ext)
        if ext_kind not in OFFICE_KINDS:
            return None, None
        return ext_kind, mime
    if kind:
        return kind, mime
    if "zip" in mime or "x-rar" in mime:
        return "archive", mime

    if ext in IMAGE_EXTENSIONS:
        return "image", IMAGE_EXTENSIONS[ext]
    if ext in EXTENSION_KINDS:
        return EXTENSION_KINDS[ext], mimetypes.guess_type(name)[0]
    return None, None


def normalize(
    name: str,
    mime_type: str | None,
    data: bytes,
    pdf_as_text: bool = False,
    depth: int = 0,
) -> NormalizedFile | None:
    """Normalize one file. Raises ``FileProcessingError`` if a handler fails."""
    kind, media_type = detect_kind(name, mime_type)
    logger.debug("Normalizing %s (mime=%s, kind=%s, %d bytes)", name, mime_type, kind, len(data))

    if kind is None:
        return None

    if kind == "image":
        return ImageBlock(media_type=media_type, data=encode_bytes(data), file_name=name)

    if kind == "pdf" and not pdf_as_text:
        return DocumentBlock(data=encode_bytes(data), file_name=name)

    if kind == "archive":
        return archive.expand(name, data, normalize, pdf_as_text=pdf_as_text, depth=depth)

    extractor = get_extractor(kind)
    if extractor is None:
        raise FileProcessingError(name, "Legacy .doc files are not supported; save as .docx")
    try:
        text, metadata = extractor(data)
    except Exception as e:
        raise FileProcessingError(name, f"Could not extract text: {e}") from e
    return ExtractedText(text=text, source_name=name, metadata=metadata)


def normalize_upload(
    name: str,
    mime_type: str | None,
    data: bytes,
    pdf_as_text: bool = False,
) -> NormalizedFile:
    """Normalize a user upload, falling back to a plain text read.

    Raises ``FileEmpty`` when the fallback read yields nothing.
    """
    result = normalize(name, mime_type, data, pdf_as_text=pdf_as_text)
    if result is not None:
        return result

    logger.info("Unhandled file type for %s (%s), reading as text", name, mime_type)
    text = data.decode("utf-8", errors="replace").strip()
    if not text:
        raise FileEmpty(name)
    return ExtractedText(text=text, source_name=name)
