"""Archive expansion.

A zip, 7z or rar upload becomes one ``ArchiveBundle``: the entry tree, one combined text
unit (directory listing plus a section per text entry) and any images or PDFs
found inside as native blocks. Zip and rar entries are read one at a time,
so the decompressed tree is never held in memory all at once. 7z archives are
staged in a temporary directory and read back entry by entry. Paths that
collide after sanitizing get a `` (2)`` style counter. 7z and rar support comes
from the optional py7zr and rarfile packages; rar reading also needs an
unrar-compatible tool on PATH.

Every entry goes back through the normalizer. Entries no handler recognises
are read as UTF-8 unless a byte-class sample says they are binary, in which
case they are dropped from the tree and listed as skipped.
"""

import logging
import re
import tempfile
import zipfile
from functools import partial
from io import BytesIO
from pathlib import Path, PurePosixPath

from .core import (
    ArchiveBundle,
    DirectoryNode,
    DocumentBlock,
    ExtractedText,
    ImageBlock,
)
from .errors import FileProcessingError

logger = logging.getLogger(__name__)

MAX_DEPTH = 3

JUNK_DIRS = {"__MACOSX", ".git", ".svn"}
JUNK_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}

# Printable ASCII, common control codes, UTF-8 lead and continuation bytes
_TEXT_BYTES = (
    frozenset([0x07, 0x08, 0x09, 0x0A, 0x0C, 0x0D, 0x1B])
    | frozenset(range(0x20, 0x7F))
    | frozenset(range(0x80, 0xF5))
)
BINARY_SAMPLE_SIZE = 1024
BINARY_THRESHOLD = 0.15

_ILLEGAL_CHARS = re.compile(r'[<>:"|?*\\\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")


def looks_binary(data: bytes) -> bool:
    """Sample the first 1KB; binary if more than 15% of it falls outside the text byte set."""
    sample = data[:BINARY_SAMPLE_SIZE]
    if not sample:
        return False
    bad = sum(1 for b in sample if b not in _TEXT_BYTES)
    return bad / len(sample) > BINARY_THRESHOLD


def is_junk(path: str) -> bool:
    """True for OS metadata files, VCS directories and resource forks."""
    parts = [p for p in path.replace("\\", "/").split("/") if p]
    if any(p in JUNK_DIRS for p in parts[:-1]):
        return True
    if not parts:
        return True
    name = parts[-1]
    return name in JUNK_FILES or name in JUNK_DIRS or name.startswith("._")


def sanitize_path(path: str) -> str:
    """Strip characters illegal in a filename from each segment and collapse whitespace.

    ``.`` and ``..`` segments are dropped so paths stay inside the archive root.
    """
    segments = []
    for segment in path.replace("\\", "/").split("/"):
        clean = _WHITESPACE.sub(" ", _ILLEGAL_CHARS.sub("", segment)).strip()
        if clean and clean not in (".", ".."):
            segments.append(clean)
    return "/".join(segments)


def expand(name: str, data: bytes, normalize, pdf_as_text: bool = False, depth: int = 0) -> ArchiveBundle:
    """Expand a zip, 7z or rar archive into an ``ArchiveBundle``.

    ``normalize`` is the normalizer entry point, called again for every entry.
    """
    if depth >= MAX_DEPTH:
        raise FileProcessingError(name, "Archive nesting is too deep")

    entries = ARCHIVE_READERS[archive_format(name, data)](name, data)
    bundle = ArchiveBundle(source_name=name, tree=DirectoryNode(name=name))
    seen = set()

    for entry_path, is_dir, read in entries:
        if is_dir or is_junk(entry_path):
            continue
        path = sanitize_path(entry_path)
        if not path:
            continue
        if path in seen:
            unique = unique_path(path, seen)
            logger.info("Renaming duplicate entry %s to %s in %s", path, unique, name)
            path = unique
        seen.add(path)
        bundle.tree.add_path(path)

        try:
            raw = read()
        except UnreadableEntry as e:
            _skip(bundle, path, f"could not be read ({e})")
            continue
        _add_entry(bundle, path, raw, normalize, pdf_as_text, depth)

    bundle.text = render_bundle_text(bundle)
    logger.info(
        "Expanded %s: %d text entries, %d native, %d skipped",
        name, len(bundle.text_entries), len(bundle.native_blocks), len(bundle.skipped),
    )
    return bundle


def archive_format(name: str, data: bytes) -> str:
    """Identify an archive by its signature, falling back to the file extension."""
    for magic, fmt in _SIGNATURES:
        if data.startswith(magic):
            return fmt
    suffix = PurePosixPath(name.lower()).suffix
    return {".7z": "7z", ".rar": "rar"}.get(suffix, "zip")


def unique_path(path: str, seen: set) -> str:
    """Return ``path`` with a `` (n)`` counter before the suffix, unused in ``seen``."""
    original = PurePosixPath(path)
    counter = 2
    while True:
        candidate = str(original.with_name(f"{original.stem} ({counter}){original.suffix}"))
        if candidate not in seen:
            return candidate
        counter += 1


class UnreadableEntry(Exception):
    """An archive entry whose bytes could not be read."""


def _zip_entries(name: str, data: bytes):
    try:
        zf = zipfile.ZipFile(BytesIO(data))
    except zipfile.BadZipFile as e:
        raise FileProcessingError(name, f"Not a valid zip archive: {e}") from e
    with zf:
        for info in zf.infolist():
            yield info.filename, info.is_dir(), partial(_read_zip, zf, info)


def _read_zip(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    try:
        return zf.read(info)
    except (zipfile.BadZipFile, RuntimeError, OSError) as e:
        raise UnreadableEntry(e) from e


def _sevenzip_entries(name: str, data: bytes):
    try:
        import py7zr
    except ImportError as e:
        raise FileProcessingError(name, "7z archives need the py7zr package (install claude-chat[archives])") from e
    from py7zr.exceptions import ArchiveError, PasswordRequired

    try:
        archive = py7zr.SevenZipFile(BytesIO(data), mode="r")
    except (ArchiveError, EOFError) as e:
        raise FileProcessingError(name, f"Not a valid 7z archive: {e}") from e

    # py7zr decompresses solid blocks as a whole, so entries are staged on disk
    with archive, tempfile.TemporaryDirectory() as staging:
        entries = archive.list()
        try:
            archive.extractall(path=staging)
        except (ArchiveError, PasswordRequired, OSError, EOFError) as e:
            raise FileProcessingError(name, f"Could not extract 7z archive: {e}") from e
        root = Path(staging)
        for info in entries:
            yield info.filename, info.is_directory, partial(_read_staged, root / info.filename)


def _read_staged(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise UnreadableEntry(e) from e


def _rar_entries(name: str, data: bytes):
    try:
        import rarfile
    except ImportError as e:
        raise FileProcessingError(name, "RAR archives need the rarfile package (install claude-chat[archives])") from e

    try:
        rf = rarfile.RarFile(BytesIO(data))
    except rarfile.Error as e:
        raise FileProcessingError(name, f"Not a valid rar archive: {e}") from e
    with rf:
        for info in rf.infolist():
            yield info.filename, info.is_dir(), partial(_read_rar, name, rf, info)


def _read_rar(name: str, rf, info) -> bytes:
    import rarfile

    try:
        return rf.read(info)
    except rarfile.RarCannotExec as e:
        raise FileProcessingError(name, "RAR extraction needs unrar, unar or bsdtar installed") from e
    except (rarfile.Error, OSError) as e:
        raise UnreadableEntry(e) from e


ARCHIVE_READERS = {
    "zip": _zip_entries,
    "7z": _sevenzip_entries,
    "rar": _rar_entries,
}

_SIGNATURES = (
    (b"PK\x03\x04", "zip"),
    (b"PK\x05\x06", "zip"),
    (b"7z\xbc\xaf\x27\x1c", "7z"),
    (b"Rar!\x1a\x07", "rar"),
)


def _add_entry(bundle: ArchiveBundle, path: str, raw: bytes, normalize, pdf_as_text: bool, depth: int) -> None:
    entry_name = PurePosixPath(path).name
    try:
        result = normalize(entry_name, None, raw, pdf_as_text=pdf_as_text, depth=depth + 1)
    except FileProcessingError as e:
        _skip(bundle, path, e.message)
        return

    if result is None:
        if looks_binary(raw):
            _skip(bundle, path, "binary content")
            return
        bundle.text_entries.append((path, raw.decode("utf-8", errors="replace")))
    elif isinstance(result, (ImageBlock, DocumentBlock)):
        result.file_name = path
        bundle.native_blocks.append(result)
    elif isinstance(result, ExtractedText):
        bundle.text_entries.append((path, result.text))
    elif isinstance(result, ArchiveBundle):
        bundle.text_entries.append((path, result.text))
        for block in result.native_blocks:
            block.file_name = f"{path}/{block.file_name}"
            bundle.native_blocks.append(block)
        bundle.skipped.extend(f"{path}/{note}" for note in result.skipped)


def _skip(bundle: ArchiveBundle, path: str, reason: str) -> None:
    logger.warning("Skipping %s in %s: %s", path, bundle.source_name, reason)
    bundle.tree.remove_path(path)
    bundle.skipped.append(f"{path}: {reason}")


def _render_tree(node: DirectoryNode, prefix: str = "", indent: str = "") -> tuple[str, str]:
    markup, listing = [], []
    for child in node.children.values():
        full_path = f"{prefix}/{child.name}" if prefix else child.name
        if child.is_file and not child.children:
            markup.append(f'{indent}<file path="{full_path}">{child.name}</file>')
            listing.append(f"{indent}📄 {child.name}")
        else:
            markup.append(f'{indent}<directory path="{full_path}">{child.name}')
            listing.append(f"{indent}📁 {child.name}")
            sub_markup, sub_listing = _render_tree(child, full_path, indent + "  ")
            if sub_markup:
                markup.append(sub_markup)
                listing.append(sub_listing)
            markup.append(f"{indent}</directory>")
    return "\n".join(markup), "\n".join(listing)


def render_bundle_text(bundle: ArchiveBundle) -> str:
    """Build the combined text unit for an archive."""
    markup, listing = _render_tree(bundle.tree)
    files, dirs = bundle.tree.count()
    lines = [
        "<file_structure>",
        markup,
        "</file_structure>",
        "",
        "=== COMPRESSED FILE STRUCTURE ===",
        f"{files} files, {dirs} directories",
        listing,
        "",
        "<file_contents>",
        "=== FILE CONTENTS ===",
        "",
    ]
    for path, text in bundle.text_entries:
        lines.append(f'<file_content path="{path}" chars="{len(text)}">')
        lines.append(f"=== {path} ===")
        lines.append(text)
        lines.append("</file_content>")
        lines.append("")
    for block in bundle.native_blocks:
        lines.append(f'<file_content path="{block.file_name}" media_type="{block.media_type}" attached="native" />')
    lines.append("</file_contents>")
    if bundle.skipped:
        lines.append("")
        lines.append("<skipped_files>")
        lines.extend(f"- {note}" for note in bundle.skipped)
        lines.append("</skipped_files>")
    return "\n".join(lines)
