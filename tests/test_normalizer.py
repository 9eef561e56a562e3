"""Tests for message normalization: text, buttons, list picks and media."""

import asyncio

import pytest

from src.fsm.models import InboundMessage, MediaRef, MessageSource, SelectionKind
from src.services.normalizer import classify_selection, clean_text


def _inbound(**fields) -> InboundMessage:
    base = dict(
        provider_message_id="SMnorm1",
        user_id="14165550100",
        tenant_id="15550000000",
        from_number="whatsapp:+14165550100",
    )
    base.update(fields)
    return InboundMessage(**base)


class TestCleanText:
    def test_collapses_whitespace_and_newlines(self):
        assert clean_text("  spent \n $45\t at  Home Depot ") == "spent $45 at Home Depot"

    def test_drops_zero_width_characters(self):
        assert clean_text("yes\u200b") == "yes"

    def test_nfkc_folds_fullwidth_digits(self):
        assert clean_text("$４５") == "$45"

    def test_empty(self):
        assert clean_text(None) == ""


class TestClassifySelection:
    def test_jobno_id_is_business_key(self):
        selection = classify_selection("jobno_7", "Front Porch")
        assert selection.kind == SelectionKind.BUSINESS_KEY.value
        assert selection.value == 7

    def test_stamped_label_is_business_key(self):
        selection = classify_selection("row-abc", "#12 Roof Repair")
        assert selection.kind == SelectionKind.BUSINESS_KEY.value
        assert selection.value == 12

    def test_jobix_id_is_row_index(self):
        selection = classify_selection("jobix_2", "Front Porch")
        assert selection.kind == SelectionKind.ROW_INDEX.value
        assert selection.value == 2

    def test_bare_digits_are_row_index(self):
        selection = classify_selection("3", "")
        assert selection.kind == SelectionKind.ROW_INDEX.value
        assert selection.value == 3

    def test_anything_else_is_opaque(self):
        selection = classify_selection("abc123-x", "Something")
        assert selection.kind == SelectionKind.OPAQUE.value
        assert selection.value is None


class TestMessageNormalizer:
    @pytest.mark.asyncio
    async def test_plain_text(self, normalizer):
        message = await normalizer.normalize(_inbound(body="  clock   in "))
        assert message.text == "clock in"
        assert message.source == MessageSource.TEXT.value
        assert message.provider_message_id == "SMnorm1"

    @pytest.mark.asyncio
    async def test_keeps_replied_to_id(self, normalizer):
        message = await normalizer.normalize(_inbound(body="ok", replied_to_message_id="SMout1"))
        assert message.replied_to_message_id == "SMout1"

    @pytest.mark.asyncio
    async def test_button_payload_that_is_a_control_surface(self, normalizer):
        message = await normalizer.normalize(_inbound(button_payload="yes", button_text="Yes ✅"))
        assert message.text == "yes"
        assert message.source == MessageSource.BUTTON.value

    @pytest.mark.asyncio
    async def test_opaque_button_payload_uses_label(self, normalizer):
        message = await normalizer.normalize(_inbound(button_payload="btn_confirm_1", button_text="Change job"))
        assert message.text == "Change job"

    @pytest.mark.asyncio
    async def test_list_selection_keeps_label_and_typed_reference(self, normalizer):
        message = await normalizer.normalize(_inbound(list_id="jobno_4", list_title="#4 Front Porch"))
        assert message.source == MessageSource.LIST.value
        assert message.text == "#4 Front Porch"
        assert message.selection.kind == SelectionKind.BUSINESS_KEY.value
        assert message.selection.value == 4

    @pytest.mark.asyncio
    async def test_picker_id_in_button_payload_is_a_list_pick(self, normalizer):
        message = await normalizer.normalize(_inbound(button_payload="jobix_2", button_text="Front Porch"))
        assert message.selection.kind == SelectionKind.ROW_INDEX.value
        assert message.text == "Front Porch"

    @pytest.mark.asyncio
    async def test_list_selection_without_label_scrubs_id(self, normalizer):
        message = await normalizer.normalize(_inbound(list_id="jobno_6"))
        assert message.text == "jobno 6"

    @pytest.mark.asyncio
    async def test_voice_note_is_transcribed_and_corrected(self, normalizer, media_services):
        transcriber, _, downloader = media_services
        transcriber.transcribe.return_value = "um so I spent forty five dollars at gen tech"
        inbound = _inbound(media=[MediaRef(url="https://media/1", content_type="audio/ogg")])

        message = await normalizer.normalize(inbound)

        downloader.download_media.assert_awaited_once_with("https://media/1")
        assert message.source == MessageSource.AUDIO.value
        assert message.text == "I spent $45 at Gentek"
        assert message.media_failed is False

    @pytest.mark.asyncio
    async def test_failed_transcription_marks_media_failed(self, normalizer, media_services):
        transcriber, _, _ = media_services
        transcriber.transcribe.return_value = None
        inbound = _inbound(media=[MediaRef(url="https://media/1", content_type="audio/ogg")])

        message = await normalizer.normalize(inbound)

        assert message.media_failed is True
        assert message.text == ""

    @pytest.mark.asyncio
    async def test_transcription_timeout_degrades(self, normalizer, media_services, monkeypatch):
        from src.config import settings

        transcriber, _, _ = media_services

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return "clock in"

        transcriber.transcribe.side_effect = slow
        monkeypatch.setattr(settings, "media_timeout_seconds", 0.01)
        inbound = _inbound(media=[MediaRef(url="https://media/1", content_type="audio/ogg")])

        message = await normalizer.normalize(inbound)

        assert message.media_failed is True

    @pytest.mark.asyncio
    async def test_image_text_is_appended_to_caption(self, normalizer, media_services):
        _, ocr, _ = media_services
        ocr.ocr.return_value = "HOME DEPOT TOTAL 45.00"
        inbound = _inbound(body="receipt", media=[MediaRef(url="https://media/2", content_type="image/jpeg")])

        message = await normalizer.normalize(inbound)

        assert message.source == MessageSource.IMAGE.value
        assert message.text == "receipt HOME DEPOT TOTAL 45.00"
        assert message.media_failed is False

    @pytest.mark.asyncio
    async def test_unreadable_image_without_caption(self, normalizer, media_services):
        _, ocr, _ = media_services
        ocr.ocr.return_value = ""
        inbound = _inbound(media=[MediaRef(url="https://media/2", content_type="image/png")])

        message = await normalizer.normalize(inbound)

        assert message.media_failed is True
