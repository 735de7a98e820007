"""Unit tests for attachment normalization."""

import pytest

from coach.core.attachments import normalize, classify, PLACEHOLDER_TEXT
from coach.core.errors import UnsupportedMediaKind
from coach.models.message import AttachmentData, conversation_title


def image(name="photo.png", file_type="image/png"):
    return AttachmentData(file_name=name, file_type=file_type)


class TestClassify:

    @pytest.mark.parametrize("file_type", [
        "image/png", "image/jpeg", "image/gif", "image/webp", "image/avif", "image/bmp",
    ])
    def test_supported_images_become_image_refs(self, file_type):
        part = classify(image(file_type=file_type))
        assert part.type == "image_ref"
        assert part.attachment.file_type == file_type

    def test_documents_become_text_references(self):
        doc = AttachmentData(file_name="x1.pdf", display_name="labs.pdf", file_type="application/pdf")
        part = classify(doc)
        assert part.is_text
        assert part.text == "[Attachment reference: labs.pdf (application/pdf)]"

    def test_unknown_kind_raises(self):
        with pytest.raises(UnsupportedMediaKind):
            classify(AttachmentData(file_name="a.exe", file_type="application/x-msdownload"))

    def test_unsupported_image_subtype_raises(self):
        with pytest.raises(UnsupportedMediaKind):
            classify(image(name="scan.tiff", file_type="image/tiff"))


class TestNormalize:

    def test_text_comes_first_and_order_is_kept(self):
        a, b = image("a.png"), image("b.jpg", "image/jpeg")
        result = normalize("look at these", [a, b])
        assert [p.type for p in result.parts] == ["text", "image_ref", "image_ref"]
        assert result.parts[1].attachment == a
        assert result.parts[2].attachment == b
        assert result.non_text_count == 2

    def test_image_only_turn_gets_placeholder_text(self):
        result = normalize("", [image()])
        assert result.parts[0].is_text
        assert result.parts[0].text == PLACEHOLDER_TEXT
        assert result.parts[1].type == "image_ref"

    def test_unsupported_attachment_is_dropped_not_fatal(self):
        bad = AttachmentData(file_name="a.bin", file_type="application/octet-stream")
        result = normalize("hello", [bad, image()])
        assert len(result.dropped) == 1
        assert "application/octet-stream" in result.dropped[0]
        assert [p.type for p in result.parts] == ["text", "image_ref"]

    def test_everything_dropped_and_no_text_is_empty(self):
        bad = AttachmentData(file_name="a.bin", file_type="application/octet-stream")
        result = normalize("", [bad])
        assert result.parts == []
        assert result.is_empty

    def test_plain_text(self):
        result = normalize("just text")
        assert len(result.parts) == 1
        assert result.non_text_count == 0
        assert not result.is_empty


class TestConversationTitle:

    def test_truncates_long_text(self):
        title = conversation_title("x" * 80)
        assert title == "x" * 50 + "..."

    def test_uses_attachment_names_without_text(self):
        assert conversation_title("", [AttachmentData(file_name="f", display_name="run.png", file_type="image/png")]) == "run.png"

    def test_default(self):
        assert conversation_title("") == "New Conversation"
