"""Build outbound content: the user message and the system block sequence."""

import html
import re

from .core import (
    ArchiveBundle,
    DocumentBlock,
    ExtractedText,
    ImageBlock,
    NormalizedFile,
    SystemContext,
    TextBlock,
    block_to_wire,
)
from .errors import ValidationError

CACHED_FILE_SEPARATOR = "\n\n---\n\n"

_SOURCE_RE = re.compile(r"<document>\s*<source>(.*?)</source>", re.DOTALL)


def wrap_document(name: str, text: str, escape: bool = True) -> str:
    """Wrap extracted text in a document marker naming its source file."""
    content = html.escape(text, quote=False) if escape else text
    return (
        "<document>\n"
        f"<source>{name}</source>\n"
        f"<document_content>{content}</document_content>\n"
        "</document>"
    )


def _file_blocks(item: NormalizedFile) -> list:
    if isinstance(item, (TextBlock, ImageBlock, DocumentBlock)):
        return [item]
    if isinstance(item, ExtractedText):
        return [TextBlock(text=wrap_document(item.source_name, item.text))]
    if isinstance(item, ArchiveBundle):
        # Archive text carries its own markup, so it is not escaped
        blocks = [TextBlock(text=wrap_document(item.source_name, item.text, escape=False), cacheable=True)]
        blocks.extend(item.native_blocks)
        return blocks
    raise ValidationError(f"Cannot compose content from {type(item).__name__}")


def compose(free_text: str, files: list) -> list:
    """Merge free text and normalized files into an ordered content-block list.

    Callers short-circuit before calling this when there is neither text nor files.
    """
    blocks = []
    text = (free_text or "").strip()
    if text:
        blocks.append(TextBlock(text=text))
    for item in files:
        blocks.extend(_file_blocks(item))
    if not blocks:
        raise ValidationError("Message is empty")
    return blocks


def _cached_file_text(item: NormalizedFile) -> str | None:
    if isinstance(item, (ExtractedText, ArchiveBundle)):
        return f"File: {item.source_name}\n\n{item.text}"
    if isinstance(item, TextBlock):
        return item.text
    return None


def compose_system_context(ctx: SystemContext) -> list:
    """Return the cacheable system blocks, or ``[]`` when every source is empty.

    Order: global directives, global cache context, conversation cache text,
    then all text-bearing cached files collapsed into one block, then native
    cached files.
    """
    blocks = []
    for text in (ctx.global_directives, ctx.global_cache_context, ctx.conversation_cache_text):
        if text and text.strip():
            blocks.append(TextBlock(text=text, cacheable=True))

    texts, natives = [], []
    for item in ctx.conversation_cached_files:
        cached = _cached_file_text(item)
        if cached is not None:
            texts.append(cached)
        if isinstance(item, (ImageBlock, DocumentBlock)):
            natives.append(item)
        elif isinstance(item, ArchiveBundle):
            natives.extend(item.native_blocks)

    if texts:
        blocks.append(TextBlock(text=CACHED_FILE_SEPARATOR.join(texts), cacheable=True))
    blocks.extend(natives)
    return blocks


def system_to_wire(blocks: list) -> list:
    """Render system blocks with cache-control annotations."""
    return [block_to_wire(b, cache_control=True) for b in blocks]


def to_display_text(content: list) -> str:
    """Lossy, human-readable rendering of message content for the UI and logs."""
    lines = []
    attached = []
    for block in content:
        if isinstance(block, TextBlock):
            sources = _SOURCE_RE.findall(block.text)
            if sources:
                attached.extend(sources)
            else:
                lines.append(block.text)
        elif isinstance(block, ImageBlock):
            lines.append("[Image]")
            if block.file_name:
                attached.append(block.file_name)
        elif isinstance(block, DocumentBlock):
            lines.append("[PDF Document]")
            if block.file_name:
                attached.append(block.file_name)

    text = "\n".join(lines)
    if attached:
        listing = "Attached files:\n" + "\n".join(f"- {name}" for name in attached)
        text = f"{text}\n\n{listing}" if text else listing
    return text
