"""Message normalizer: every inbound payload becomes one canonical text.

Text, button clicks, list selections, voice notes and photos all come out as
a `NormalizedMessage`. List selections additionally keep a typed reference
so a row index is never mistaken for a durable business key.
"""

import re
import unicodedata
from typing import Optional

from src.config import settings
from src.fsm.models import (
    InboundMessage,
    ListSelection,
    MediaRef,
    MessageSource,
    NormalizedMessage,
    SelectionKind,
    match_control_token,
)
from src.integrations.twilio import twilio_client
from src.services.retry import with_timeout_default
from src.services.transcription import ocr_service, transcription_service
from src.utils.logger import log
from src.utils.transcript_normalize import post_correct, scrub_picker_tokens

_WHITESPACE_RE = re.compile(r"\s+")
_OPAQUE_PAYLOAD_RE = re.compile(r"^(?:\d+|[A-Za-z0-9]+(?:[_:.-][A-Za-z0-9]+)+)$")

_BUSINESS_KEY_ID_RE = re.compile(r"^jobno_(\d+)$", re.IGNORECASE)
_ROW_INDEX_ID_RE = re.compile(r"^jobix_(\d+)$", re.IGNORECASE)
_BARE_DIGITS_RE = re.compile(r"^\d+$")
_STAMPED_LABEL_RE = re.compile(r"^#\s?(\d+)\b")


def clean_text(text: Optional[str]) -> str:
    """NFKC-normalize, drop control/format characters, collapse whitespace."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", text)
    text = "".join(
        " " if ch in "\r\n\t" else ch
        for ch in text
        if ch in "\r\n\t" or not unicodedata.category(ch).startswith("C")
    )
    return _WHITESPACE_RE.sub(" ", text).strip()


def classify_selection(raw_id: str, label: str) -> ListSelection:
    """Work out whether a list selection id is a row index or a business key.

    - `jobno_<n>` ids carry the job number itself
    - a label stamped `#<n>` carries the job number
    - `jobix_<n>` ids and bare digits are positions in the rendered list
    """
    raw_id = (raw_id or "").strip()
    label = (label or "").strip()

    match = _BUSINESS_KEY_ID_RE.match(raw_id)
    if match:
        return ListSelection(kind=SelectionKind.BUSINESS_KEY, value=int(match.group(1)), raw_id=raw_id, label=label)

    stamped = _STAMPED_LABEL_RE.match(label)
    if stamped:
        return ListSelection(kind=SelectionKind.BUSINESS_KEY, value=int(stamped.group(1)), raw_id=raw_id, label=label)

    match = _ROW_INDEX_ID_RE.match(raw_id)
    if match:
        return ListSelection(kind=SelectionKind.ROW_INDEX, value=int(match.group(1)), raw_id=raw_id, label=label)

    if _BARE_DIGITS_RE.match(raw_id):
        return ListSelection(kind=SelectionKind.ROW_INDEX, value=int(raw_id), raw_id=raw_id, label=label)

    return ListSelection(kind=SelectionKind.OPAQUE, raw_id=raw_id, label=label)


def _is_picker_id(value: Optional[str]) -> bool:
    if not value:
        return False
    value = value.strip()
    return bool(_BUSINESS_KEY_ID_RE.match(value) or _ROW_INDEX_ID_RE.match(value))


class MessageNormalizer:
    """Convert an InboundMessage into a NormalizedMessage."""

    def __init__(self, transcriber=None, ocr=None, downloader=None):
        self.transcriber = transcriber or transcription_service
        self.ocr = ocr or ocr_service
        self.downloader = downloader or twilio_client

    async def normalize(self, inbound: InboundMessage) -> NormalizedMessage:
        common = {
            "provider_message_id": inbound.provider_message_id,
            "media_refs": list(inbound.media),
            "replied_to_message_id": inbound.replied_to_message_id,
        }

        list_id = inbound.list_id
        list_title = inbound.list_title
        if list_id is None and _is_picker_id(inbound.button_payload):
            list_id, list_title = inbound.button_payload, inbound.button_text

        if list_id is not None:
            selection = classify_selection(clean_text(list_id), clean_text(list_title))
            text = selection.label or scrub_picker_tokens(selection.raw_id)
            return NormalizedMessage(text=text, source=MessageSource.LIST, selection=selection, **common)

        if inbound.button_payload is not None or inbound.button_text is not None:
            return NormalizedMessage(
                text=self._button_text(inbound.button_payload, inbound.button_text),
                source=MessageSource.BUTTON,
                **common,
            )

        body = clean_text(inbound.body)
        audio = next((m for m in inbound.media if m.is_audio), None)
        if audio is not None:
            transcript = await self._transcribe(audio)
            if transcript is None:
                return NormalizedMessage(text=body, source=MessageSource.AUDIO, media_failed=True, **common)
            text = " ".join(part for part in (body, post_correct(transcript)) if part)
            return NormalizedMessage(text=clean_text(text), source=MessageSource.AUDIO, **common)

        image = next((m for m in inbound.media if m.is_image), None)
        if image is not None:
            extracted = post_correct(await self._read_image(image))
            text = "\n".join(part for part in (body, extracted) if part)
            return NormalizedMessage(
                text=clean_text(text),
                source=MessageSource.IMAGE,
                media_failed=not extracted and not body,
                **common,
            )

        return NormalizedMessage(text=body, source=MessageSource.TEXT, **common)

    @staticmethod
    def _button_text(payload: Optional[str], label: Optional[str]) -> str:
        """Payload when it is a control surface or readable command, else label."""
        payload = clean_text(payload)
        label = clean_text(label)
        if payload and match_control_token(payload):
            return payload
        if payload and not _OPAQUE_PAYLOAD_RE.match(payload):
            return payload
        return label or payload

    async def _transcribe(self, media: MediaRef) -> Optional[str]:
        async def _run():
            audio = await self.downloader.download_media(media.url)
            return await self.transcriber.transcribe(audio, media.content_type)

        text = await with_timeout_default(
            _run(), settings.media_timeout_seconds, None, "Voice note transcription"
        )
        if text is None:
            log.warning("🎙️ Voice note produced no transcript")
        return text

    async def _read_image(self, media: MediaRef) -> str:
        async def _run():
            image = await self.downloader.download_media(media.url)
            return await self.ocr.ocr(image, media.content_type or "image/jpeg")

        return await with_timeout_default(
            _run(), settings.media_timeout_seconds, "", "Image OCR"
        ) or ""


# Global instance
message_normalizer = MessageNormalizer()
