"""Twilio webhook handlers for FastAPI."""

import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.config import settings
from src.fsm.models import InboundMessage, MediaRef
from src.handlers.message import process_inbound_message
from src.integrations.twilio import twilio_client
from src.utils.logger import log

router = APIRouter()
limiter = Limiter(key_func=get_remote_address)

_NON_DIGITS = re.compile(r"\D")


def digits_only(address: Optional[str]) -> str:
    """'whatsapp:+1 (416) 555-0100' → '14165550100'."""
    return _NON_DIGITS.sub("", address or "")


def _optional(form: Dict[str, Any], name: str) -> Optional[str]:
    value = form.get(name)
    if value is None or value == "":
        return None
    return str(value)


def _media_refs(form: Dict[str, Any]) -> List[MediaRef]:
    try:
        count = int(form.get("NumMedia") or 0)
    except ValueError:
        count = 0
    refs = []
    for i in range(count):
        url = _optional(form, f"MediaUrl{i}")
        if url:
            refs.append(MediaRef(url=url, content_type=_optional(form, f"MediaContentType{i}") or ""))
    return refs


def build_inbound_message(form: Dict[str, Any]) -> InboundMessage:
    """Map Twilio's form envelope onto the transport-neutral inbound model.

    The tenant is the business number the message was sent to; the user is
    the sender. Both are reduced to digits.
    """
    sender = str(form.get("From", ""))
    return InboundMessage(
        provider_message_id=str(form["MessageSid"]),
        user_id=digits_only(sender),
        tenant_id=digits_only(str(form.get("To", ""))),
        from_number=sender,
        body=str(form.get("Body") or ""),
        media=_media_refs(form),
        button_payload=_optional(form, "ButtonPayload"),
        button_text=_optional(form, "ButtonText"),
        list_id=_optional(form, "ListId"),
        list_title=_optional(form, "ListTitle"),
        replied_to_message_id=_optional(form, "OriginalRepliedMessageSid"),
    )


@router.post("/webhook/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def whatsapp_webhook(request: Request):
    """Handle incoming WhatsApp messages from Twilio.

    Always answers 200 with an empty body once the signature checks out.
    Internal failures become an apology to the user, never a transport error,
    because a non-2xx answer makes Twilio redeliver.

    Returns:
        Empty response with 200 status (403 on a bad signature)
    """
    try:
        form_data = dict(await request.form())
        log.info(f"📥 Webhook received params: {list(form_data.keys())}")

        signature = request.headers.get("X-Twilio-Signature", "")
        if not twilio_client.validate_webhook(str(request.url), form_data, signature):
            log.warning(f"🚫 Invalid webhook signature from {form_data.get('From')}")
            raise HTTPException(status_code=403, detail="Invalid signature")

        if not form_data.get("MessageSid") or not form_data.get("From"):
            log.warning("⚠️ Webhook without MessageSid/From ignored")
            return Response(content="", status_code=200)

        inbound = build_inbound_message(form_data)
        if inbound.media:
            log.info(f"📎 {len(inbound.media)} media item(s): {[m.content_type for m in inbound.media]}")

        await process_inbound_message(inbound)

        # Twilio expects empty or TwiML, not JSON
        return Response(content="", status_code=200)

    except HTTPException:
        raise
    except Exception as e:
        log.error(f"Error in webhook handler: {e}")
        return Response(content="", status_code=200)


@router.get("/webhook/whatsapp")
async def whatsapp_webhook_get():
    """Handle GET requests to webhook (for testing)."""
    return {"message": "Ledgerline WhatsApp webhook is running"}


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "ledgerline", "state_backend": settings.state_backend}
