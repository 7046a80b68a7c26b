"""Tests for message and system-context composition."""

import pytest

from claude_chat.composer import compose, compose_system_context, system_to_wire, to_display_text, wrap_document
from claude_chat.core import (
    ArchiveBundle,
    DirectoryNode,
    DocumentBlock,
    ExtractedText,
    ImageBlock,
    SystemContext,
    TextBlock,
    block_to_wire,
)
from claude_chat.errors import ValidationError


def _image(name="a.png"):
    return ImageBlock(media_type="image/png", data="aGk=", file_name=name)


def test_image_only_message():
    blocks = compose("", [_image()])
    assert len(blocks) == 1
    assert isinstance(blocks[0], ImageBlock)


def test_text_only_message():
    blocks = compose("hello", [])
    assert [block_to_wire(b) for b in blocks] == [{"type": "text", "text": "hello"}]


def test_text_is_trimmed_and_first():
    blocks = compose("  hi  ", [_image()])
    assert blocks[0].text == "hi"
    assert isinstance(blocks[1], ImageBlock)


def test_extracted_text_is_wrapped_and_escaped():
    blocks = compose("", [ExtractedText(text="a < b & c", source_name="notes.txt")])
    assert blocks[0].text == (
        "<document>\n<source>notes.txt</source>\n"
        "<document_content>a &lt; b &amp; c</document_content>\n</document>"
    )


def test_archive_is_cacheable_and_followed_by_natives():
    bundle = ArchiveBundle(
        source_name="src.zip",
        tree=DirectoryNode(name="src.zip"),
        text="<file_structure></file_structure>",
        native_blocks=[_image("img/x.png")],
    )
    blocks = compose("look", [bundle])
    assert len(blocks) == 3
    assert blocks[1].cacheable
    assert "<file_structure>" in blocks[1].text
    assert blocks[2].file_name == "img/x.png"


def test_empty_message_rejected():
    with pytest.raises(ValidationError):
        compose("   ", [])


def test_message_wire_has_no_cache_control_or_metadata():
    blocks = compose("", [_image("secret.png")])
    wire = block_to_wire(blocks[0])
    assert "cache_control" not in wire
    assert "metadata" not in wire["source"]


class TestSystemContext:
    def test_empty_context(self):
        assert compose_system_context(SystemContext()) == []

    def test_order_and_collapse(self):
        ctx = SystemContext(
            global_directives="Be brief.",
            global_cache_context="  ",
            conversation_cache_text="Project notes",
            conversation_cached_files=[
                ExtractedText(text="one", source_name="a.txt"),
                _image("b.png"),
                ExtractedText(text="two", source_name="c.txt"),
                DocumentBlock(data="cGRm", file_name="d.pdf"),
            ],
        )
        blocks = compose_system_context(ctx)
        assert [type(b).__name__ for b in blocks] == ["TextBlock", "TextBlock", "TextBlock", "ImageBlock", "DocumentBlock"]
        assert blocks[0].text == "Be brief."
        assert blocks[1].text == "Project notes"
        assert blocks[2].text == "File: a.txt\n\none\n\n---\n\nFile: c.txt\n\ntwo"

    def test_every_system_block_is_cache_marked(self):
        ctx = SystemContext(global_directives="x", conversation_cached_files=[_image()])
        wire = system_to_wire(compose_system_context(ctx))
        assert all(b["cache_control"] == {"type": "ephemeral"} for b in wire)


def test_display_text():
    content = [
        TextBlock(text="Please review"),
        TextBlock(text=wrap_document("report.docx", "body")),
        _image("chart.png"),
        DocumentBlock(data="cGRm", file_name="plan.pdf"),
    ]
    assert to_display_text(content) == (
        "Please review\n[Image]\n[PDF Document]\n\n"
        "Attached files:\n- report.docx\n- chart.png\n- plan.pdf"
    )
