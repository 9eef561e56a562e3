"""Canned reply copy and the outbound reply emitter."""
import asyncio
from typing import Optional

from src.fsm.models import Reply
from src.integrations.twilio import twilio_client
from src.utils.logger import log

CAPABILITIES = (
    "🤖 Here's what I can do:\n"
    "• Expenses: spent $45 on screws at Home Depot\n"
    "• Revenue: received $1,200 from Smith for job Roof Repair\n"
    "• Jobs: create job Roof Repair, list jobs, set active job Roof Repair, "
    "move last log to Front Porch\n"
    "• Tasks: task - buy nails, my tasks, done #4\n"
    "• Time: clock in, clock out, start break, timesheet week"
)


def capability_summary() -> Reply:
    return Reply(text=CAPABILITIES)


def nudge(description: str) -> Reply:
    """Reminder that an unrelated command arrived while something is pending."""
    return Reply(
        text=f"⏸️ You still have a pending {description}. Finish it first, or skip it to come back later.",
        options=["yes", "edit", "cancel", "skip"],
    )


def busy() -> Reply:
    return Reply(text="⏳ Still processing your previous message. Try again in a moment.")


def still_working() -> Reply:
    return Reply(text="⏳ Still working on that, I'll reply as soon as it's done.")


def apology(trace_id: Optional[str] = None) -> Reply:
    text = "😕 Sorry, something went wrong on my side. Nothing was saved."
    if trace_id:
        text += f" (ref {trace_id})"
    return Reply(text=text)


def try_again() -> Reply:
    return Reply(text="⚠️ I couldn't save that just now. Please try again.")


def nothing_to_cancel() -> Reply:
    return Reply(text="Nothing to cancel.")


def cancelled(count: int) -> Reply:
    suffix = "" if count == 1 else f" ({count} pending items cleared)"
    return Reply(text=f"❌ Operation cancelled.{suffix}")


def nothing_to_resume() -> Reply:
    return Reply(text="Nothing to resume.")


def parked(description: str) -> Reply:
    return Reply(text=f"⏭️ Skipped the {description}. Send \"resume\" to pick it up again.")


def voice_note_failed() -> Reply:
    return Reply(text="🎙️ I couldn't make out that voice note. Could you type it instead?")


def media_unreadable() -> Reply:
    return Reply(text="🖼️ I couldn't read anything in that image. Could you type the details?")


class ReplyEmitter:
    """Sends rendered replies through Twilio."""

    def __init__(self, client=None):
        self.client = client or twilio_client

    async def emit(self, to: str, reply: Reply, from_number: Optional[str] = None) -> Optional[str]:
        """Send `reply` to `to`.

        Returns:
            Provider message id of the outbound message, or None if the send
            failed (already logged by the client)
        """
        body = reply.render()
        sid = await asyncio.to_thread(self.client.send_message, to, body, from_number)
        if sid is None:
            log.warning(f"⚠️ Reply to {to} was not delivered")
        return sid


# Global instance
reply_emitter = ReplyEmitter()
