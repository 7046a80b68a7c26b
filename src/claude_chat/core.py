"""Core data models for claude-chat."""

import base64
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from .errors import ValidationError

IMAGE_MEDIA_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
PDF_MEDIA_TYPE = "application/pdf"

EPHEMERAL = {"type": "ephemeral"}


@dataclass
class TextBlock:
    """Plain text content."""

    text: str
    cacheable: bool = False

    type = "text"


@dataclass
class ImageBlock:
    """A native image attachment, base64 of the raw bytes."""

    media_type: str
    data: str
    file_name: Optional[str] = None

    type = "image"

    def __post_init__(self):
        if self.media_type not in IMAGE_MEDIA_TYPES:
            raise ValidationError(f"Unsupported image media type: {self.media_type}")


@dataclass
class DocumentBlock:
    """A native PDF attachment, base64 of the raw bytes."""

    data: str
    file_name: Optional[str] = None
    media_type: str = PDF_MEDIA_TYPE

    type = "document"

    def __post_init__(self):
        if self.media_type != PDF_MEDIA_TYPE:
            raise ValidationError(f"Unsupported document media type: {self.media_type}")


ContentBlock = Union[TextBlock, ImageBlock, DocumentBlock]


@dataclass
class ExtractedText:
    """Text pulled out of a text-bearing format (Word, Excel, PDF-as-text, plain text)."""

    text: str
    source_name: str
    metadata: dict = field(default_factory=dict)  # e.g. {"type": "Excel", "sheets": 2}


@dataclass
class DirectoryNode:
    """One node in an archive's entry tree. Leaves are files."""

    name: str
    children: dict = field(default_factory=dict)  # name -> DirectoryNode
    is_file: bool = False

    def add_path(self, path: str) -> None:
        parts = [p for p in path.split("/") if p]
        node = self
        for i, part in enumerate(parts):
            child = node.children.get(part)
            if child is None:
                child = DirectoryNode(name=part)
                node.children[part] = child
            if i == len(parts) - 1:
                child.is_file = True
            node = child

    def remove_path(self, path: str) -> None:
        parts = [p for p in path.split("/") if p]
        trail = [self]
        for part in parts:
            child = trail[-1].children.get(part)
            if child is None:
                return
            trail.append(child)
        # Prune the leaf and any directories left empty by removing it
        for parent, node in zip(reversed(trail[:-1]), reversed(trail[1:])):
            if node.children:
                break
            del parent.children[node.name]

    def count(self) -> tuple[int, int]:
        """Return ``(files, directories)`` below this node."""
        files = dirs = 0
        for child in self.children.values():
            if child.is_file and not child.children:
                files += 1
            else:
                dirs += 1
                sub_files, sub_dirs = child.count()
                files += sub_files
                dirs += sub_dirs
        return files, dirs

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "is_file": self.is_file,
            "children": [c.to_dict() for c in self.children.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DirectoryNode":
        node = cls(name=data.get("name", ""), is_file=bool(data.get("is_file")))
        for child in data.get("children", []):
            sub = cls.from_dict(child)
            node.children[sub.name] = sub
        return node


@dataclass
class ArchiveBundle:
    """A recursively normalized archive.

    ``text`` is the combined text unit (directory listing plus one section per
    text entry); ``native_blocks`` are images and PDFs found inside.
    """

    source_name: str
    tree: DirectoryNode
    text: str = ""
    native_blocks: list = field(default_factory=list)  # list[ContentBlock]
    text_entries: list = field(default_factory=list)  # list[tuple[path, text]]
    skipped: list = field(default_factory=list)  # skip notes, one per dropped entry


NormalizedFile = Union[TextBlock, ImageBlock, DocumentBlock, ExtractedText, ArchiveBundle]


@dataclass
class Message:
    """A single chat message in wire order."""

    role: str  # "user" | "assistant"
    content: list  # list[ContentBlock]
    is_error: bool = False  # terminal error shown to the user, never persisted


@dataclass
class Conversation:
    """A persisted conversation, owned by the store."""

    id: str
    messages: list = field(default_factory=list)  # list[Message]
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    version: int = 0


@dataclass
class SystemContext:
    """Pinned context assembled fresh for every outbound request."""

    global_directives: str = ""
    global_cache_context: str = ""
    conversation_cache_text: str = ""
    conversation_cached_files: list = field(default_factory=list)  # list[NormalizedFile]


# ── Stream lifecycle events ──────────────────────────────────────


@dataclass
class Update:
    delta: str
    full_text: str


@dataclass
class Complete:
    full_text: str


@dataclass
class Error:
    message: str
    error_type: str = "api_error"


StreamEvent = Union[Update, Complete, Error]


# ── Wire format ──────────────────────────────────────────────────


def encode_bytes(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def block_to_wire(block: ContentBlock, cache_control: bool = False, metadata: bool = False) -> dict:
    """Render a content block in the upstream wire format.

    ``metadata`` keeps internal fields such as the file name (storage only);
    ``cache_control`` annotates cacheable blocks (system blocks only).
    """
    if isinstance(block, TextBlock):
        wire = {"type": "text", "text": block.text}
        if cache_control and block.cacheable:
            wire["cache_control"] = dict(EPHEMERAL)
        return wire

    wire = {
        "type": block.type,
        "source": {"type": "base64", "media_type": block.media_type, "data": block.data},
    }
    if metadata and block.file_name:
        wire["source"]["metadata"] = {"fileName": block.file_name}
    if cache_control:
        wire["cache_control"] = dict(EPHEMERAL)
    return wire


def block_from_wire(data: dict) -> ContentBlock:
    """Parse a wire-format (or stored) content block."""
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data.get("text", ""), cacheable="cache_control" in data)

    source = data.get("source") or {}
    if source.get("type") != "base64":
        raise ValidationError(f"Unsupported content source: {source.get('type')!r}")
    file_name = (source.get("metadata") or {}).get("fileName")
    if block_type == "image":
        return ImageBlock(media_type=source.get("media_type", ""), data=source.get("data", ""), file_name=file_name)
    if block_type == "document":
        return DocumentBlock(data=source.get("data", ""), file_name=file_name, media_type=source.get("media_type", ""))
    raise ValidationError(f"Unsupported content block type: {block_type!r}")


def message_to_wire(message: Message, metadata: bool = False) -> dict:
    return {
        "role": message.role,
        "content": [block_to_wire(b, metadata=metadata) for b in message.content],
    }


def message_from_wire(data: dict) -> Message:
    """Parse a stored message. Legacy string content becomes one text block."""
    content = data.get("content", [])
    if isinstance(content, str):
        blocks = [TextBlock(text=content)] if content else []
    else:
        blocks = [block_from_wire(item) for item in content if isinstance(item, dict)]
    return Message(role=data.get("role", "user"), content=blocks)


def normalized_to_dict(item: NormalizedFile) -> dict:
    """Serialize a normalized file for storage or for the upload endpoint."""
    if isinstance(item, (TextBlock, ImageBlock, DocumentBlock)):
        return {"kind": "block", "block": block_to_wire(item, metadata=True)}
    if isinstance(item, ExtractedText):
        return {"kind": "text", "name": item.source_name, "text": item.text, "metadata": item.metadata}
    return {
        "kind": "archive",
        "name": item.source_name,
        "text": item.text,
        "tree": item.tree.to_dict(),
        "blocks": [block_to_wire(b, metadata=True) for b in item.native_blocks],
        "entries": [[path, text] for path, text in item.text_entries],
        "skipped": list(item.skipped),
    }


def normalized_from_dict(data: dict) -> NormalizedFile:
    kind = data.get("kind")
    if kind == "block":
        return block_from_wire(data.get("block") or {})
    if kind == "text":
        return ExtractedText(text=data.get("text", ""), source_name=data.get("name", ""), metadata=data.get("metadata") or {})
    if kind == "archive":
        return ArchiveBundle(
            source_name=data.get("name", ""),
            tree=DirectoryNode.from_dict(data.get("tree") or {}),
            text=data.get("text", ""),
            native_blocks=[block_from_wire(b) for b in data.get("blocks", [])],
            text_entries=[(p, t) for p, t in data.get("entries", [])],
            skipped=list(data.get("skipped", [])),
        )
    raise ValidationError(f"Unknown normalized file kind: {kind!r}")
