"""Tests for the Twilio webhook, envelope mapping and the safety timer."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from src.config import settings
from src.handlers import message as message_handler
from src.handlers.message import process_inbound_message
from src.handlers.message_pipeline import set_pipeline
from src.handlers.webhook import build_inbound_message, digits_only, limiter
from src.main import app
from src.services import reply as copy


def _form(**overrides):
    form = {
        "MessageSid": "SMweb0001",
        "From": "whatsapp:+14165550100",
        "To": "whatsapp:+15550000000",
        "Body": "spent $45 on screws at Home Depot",
        "NumMedia": "0",
    }
    form.update(overrides)
    return form


@pytest.fixture
def client(pipeline):
    set_pipeline(pipeline)
    limiter.reset()
    yield TestClient(app)
    set_pipeline(None)


# ============================================================================
# Envelope mapping
# ============================================================================


class TestBuildInboundMessage:
    def test_maps_ids_and_numbers(self):
        inbound = build_inbound_message(_form())

        assert inbound.provider_message_id == "SMweb0001"
        assert inbound.user_id == "14165550100"
        assert inbound.tenant_id == "15550000000"
        assert inbound.from_number == "whatsapp:+14165550100"
        assert inbound.body == "spent $45 on screws at Home Depot"
        assert inbound.media == []

    def test_maps_media_buttons_lists_and_quotes(self):
        inbound = build_inbound_message(_form(
            Body="",
            NumMedia="2",
            MediaUrl0="https://api.twilio.com/media/0",
            MediaContentType0="audio/ogg",
            MediaUrl1="https://api.twilio.com/media/1",
            MediaContentType1="image/jpeg",
            ButtonPayload="yes",
            ButtonText="Yes",
            ListId="jobno_3",
            ListTitle="#3 Basement",
            OriginalRepliedMessageSid="SMout0042",
        ))

        assert [m.content_type for m in inbound.media] == ["audio/ogg", "image/jpeg"]
        assert inbound.button_payload == "yes"
        assert inbound.list_id == "jobno_3"
        assert inbound.list_title == "#3 Basement"
        assert inbound.replied_to_message_id == "SMout0042"

    def test_blank_optional_fields_are_none(self):
        inbound = build_inbound_message(_form(ButtonPayload="", OriginalRepliedMessageSid=""))
        assert inbound.button_payload is None
        assert inbound.replied_to_message_id is None

    def test_bad_media_count_is_ignored(self):
        assert build_inbound_message(_form(NumMedia="lots")).media == []

    def test_digits_only(self):
        assert digits_only("whatsapp:+1 (416) 555-0100") == "14165550100"
        assert digits_only(None) == ""


# ============================================================================
# HTTP surface
# ============================================================================


class TestWebhookEndpoint:
    def test_message_is_processed_and_answered_200(self, client, emitter):
        response = client.post("/webhook/whatsapp", data=_form())

        assert response.status_code == 200
        assert response.text == ""
        assert emitter.sent[-1][0] == "whatsapp:+14165550100"
        assert emitter.last.text == "Confirm expense: $45.00 at Home Depot (screws)?"

    def test_redelivery_replays_reply(self, client, emitter, ledger):
        client.post("/webhook/whatsapp", data=_form())
        client.post("/webhook/whatsapp", data=_form(MessageSid="SMweb0002", Body="yes"))
        client.post("/webhook/whatsapp", data=_form(MessageSid="SMweb0002", Body="yes"))

        assert len(ledger.transactions) == 1
        assert emitter.texts[-2] == emitter.texts[-1]

    def test_missing_message_sid_is_acknowledged(self, client, emitter):
        form = _form()
        del form["MessageSid"]

        response = client.post("/webhook/whatsapp", data=form)

        assert response.status_code == 200
        assert emitter.sent == []

    def test_invalid_signature_is_rejected(self, client, emitter, monkeypatch):
        monkeypatch.setattr(settings, "verify_webhook_signature", True)

        response = client.post(
            "/webhook/whatsapp", data=_form(), headers={"X-Twilio-Signature": "not-a-signature"}
        )

        assert response.status_code == 403
        assert emitter.sent == []

    def test_pipeline_crash_still_answers_200(self, client, pipeline, monkeypatch):
        async def explode(inbound):
            raise RuntimeError("boom")

        monkeypatch.setattr(pipeline, "process", explode)

        response = client.post("/webhook/whatsapp", data=_form())

        assert response.status_code == 200
        assert pipeline.emitter.last.text == copy.apology().text

    def test_health(self, client):
        response = client.get("/health")
        assert response.json() == {"status": "healthy", "service": "ledgerline", "state_backend": "memory"}

    def test_get_webhook(self, client):
        assert client.get("/webhook/whatsapp").status_code == 200


# ============================================================================
# Safety timer
# ============================================================================


class TestSafetyTimer:
    @pytest.mark.asyncio
    async def test_fast_message_gets_one_reply(self, pipeline, make_inbound, emitter):
        await process_inbound_message(make_inbound("clock in"), pipeline=pipeline, timeout=1.0)

        assert len(emitter.sent) == 1

    @pytest.mark.asyncio
    async def test_slow_message_gets_interim_then_real_reply(self, pipeline, make_inbound, emitter, monkeypatch):
        real_handle = pipeline.engine.handle

        async def slow_handle(ctx):
            await asyncio.sleep(0.2)
            return await real_handle(ctx)

        monkeypatch.setattr(pipeline.engine, "handle", slow_handle)

        await process_inbound_message(make_inbound("spent $45 on screws at Home Depot"), pipeline=pipeline, timeout=0.05)
        assert emitter.texts == [copy.still_working().text]

        # The work was not cancelled and still delivers its reply
        await asyncio.sleep(0.5)
        assert emitter.texts == [
            copy.still_working().text,
            "Confirm expense: $45.00 at Home Depot (screws)?",
        ]

    @pytest.mark.asyncio
    async def test_late_task_is_retained_until_done(self, pipeline, make_inbound, emitter, monkeypatch):
        real_handle = pipeline.engine.handle

        async def slow_handle(ctx):
            await asyncio.sleep(0.2)
            return await real_handle(ctx)

        monkeypatch.setattr(pipeline.engine, "handle", slow_handle)

        before = set(message_handler._background_tasks)
        await process_inbound_message(make_inbound("clock in"), pipeline=pipeline, timeout=0.05)
        pending = message_handler._background_tasks - before
        assert len(pending) == 1

        await asyncio.sleep(0.5)
        assert not pending & message_handler._background_tasks
        assert len(emitter.sent) == 2
