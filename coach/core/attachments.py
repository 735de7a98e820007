"""
Attachment normalization.

Turns a message's text plus its attachment references into an ordered,
provider-neutral list of ContentParts. Provider adapters render these parts
into their own wire shapes.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from coach.core.errors import UnsupportedMediaKind
from coach.models.message import AttachmentData, ContentPart
from server.logging_config import get_logger

SUPPORTED_IMAGE_TYPES = frozenset({
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "image/avif",
    "image/bmp",
})

DOCUMENT_TYPES = frozenset({
    "application/pdf",
    "application/json",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/csv",
    "text/markdown",
})

DOCUMENT_PREFIXES = ("text/", "audio/")

PLACEHOLDER_TEXT = " "


@dataclass
class NormalizedContent:
    parts: List[ContentPart] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)

    @property
    def non_text_count(self) -> int:
        return sum(1 for p in self.parts if not p.is_text)

    @property
    def is_empty(self) -> bool:
        return not any(p.is_text and p.text and p.text.strip() for p in self.parts) and self.non_text_count == 0


def is_image(file_type: str) -> bool:
    return (file_type or "").lower() in SUPPORTED_IMAGE_TYPES


def is_document(file_type: str) -> bool:
    kind = (file_type or "").lower()
    return kind in DOCUMENT_TYPES or kind.startswith(DOCUMENT_PREFIXES)


def attachment_reference(attachment: AttachmentData) -> str:
    return f"[Attachment reference: {attachment.label} ({attachment.file_type})]"


def classify(attachment: AttachmentData) -> ContentPart:
    """Map one attachment to a content part.

    Raises:
        UnsupportedMediaKind: if the declared kind is neither a supported
            image nor a recognised document
    """
    if is_image(attachment.file_type):
        return ContentPart.image(attachment)
    if is_document(attachment.file_type):
        return ContentPart.from_text(attachment_reference(attachment))
    raise UnsupportedMediaKind(attachment.file_type, attachment.label)


def normalize(
    text: str,
    attachments: Optional[List[AttachmentData]] = None,
    logger: Optional[logging.Logger] = None,
) -> NormalizedContent:
    """
    Build the ordered content parts for a message.

    Text comes first, then one part per usable attachment in input order.
    Attachments with an unrecognised kind are dropped and reported in
    `dropped`; they never abort the turn. Whenever a non-text part is
    present, the first part is a non-empty text part.
    """
    log = logger or get_logger(__name__)
    result = NormalizedContent()

    if text:
        result.parts.append(ContentPart.from_text(text))

    for attachment in attachments or []:
        try:
            result.parts.append(classify(attachment))
        except UnsupportedMediaKind as e:
            log.warning(f"Dropping attachment: {e}")
            result.dropped.append(str(e))

    if result.non_text_count and not (result.parts[0].is_text and result.parts[0].text):
        result.parts.insert(0, ContentPart.from_text(PLACEHOLDER_TEXT))

    return result
