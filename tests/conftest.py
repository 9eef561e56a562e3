"""Shared pytest fixtures and configuration for all test suites.

This module provides common fixtures that can be used across all test files:
- A dummy environment (set before any `src` import reads settings)
- In-memory state backends and ledger
- Fake reply emitter and fallback classifier
- A fully wired pipeline and inbound-message factory
"""

import os

# Settings are read at import time, so the environment goes first.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STATE_BACKEND", "memory")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("VERIFY_WEBHOOK_SIGNATURE", "false")
os.environ.setdefault("ENABLE_LLM_FALLBACK", "false")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test_twilio_token")
os.environ.setdefault("TWILIO_WHATSAPP_NUMBER", "+15550000000")

import itertools
from typing import List, Optional, Tuple
from unittest.mock import AsyncMock, Mock

import pytest

from src.fsm.models import InboundMessage, IntentResult, MediaRef, Reply
from src.fsm.stores import build_backends
from src.handlers.message_pipeline import MessagePipeline
from src.services.intent import IntentCascade
from src.services.normalizer import MessageNormalizer

TENANT = "15550000000"
USER = "14165550100"
FROM = "whatsapp:+14165550100"


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test (slow)")
    config.addinivalue_line("markers", "unit: mark test as unit test (fast)")
    config.addinivalue_line("markers", "fsm: mark test as FSM-related test")
    config.addinivalue_line("markers", "pipeline: mark test as pipeline test")


# ============================================================================
# Fakes
# ============================================================================


class FakeEmitter:
    """Records replies instead of sending them; returns sequential SIDs."""

    def __init__(self):
        self.sent: List[Tuple[str, Reply, str]] = []
        self._ids = itertools.count(1)

    async def emit(self, to: str, reply: Reply, from_number: Optional[str] = None) -> Optional[str]:
        sid = f"SMout{next(self._ids):04d}"
        self.sent.append((to, reply, sid))
        return sid

    @property
    def texts(self) -> List[str]:
        return [reply.text for _, reply, _ in self.sent]

    @property
    def last(self) -> Reply:
        return self.sent[-1][1]

    @property
    def last_sid(self) -> str:
        return self.sent[-1][2]


class FakeFallback:
    """Fallback classifier double with a scripted answer."""

    def __init__(self, result: Optional[IntentResult] = None):
        self.result = result
        self.calls: List[str] = []
        self.enabled = True

    async def classify(self, text: str) -> Optional[IntentResult]:
        self.calls.append(text)
        return self.result


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def emitter():
    return FakeEmitter()


@pytest.fixture
def fallback():
    return FakeFallback()


@pytest.fixture
def cascade(fallback):
    return IntentCascade(fallback=fallback, fuzzy_floor=0.80)


@pytest.fixture
def media_services():
    """Transcriber, OCR and downloader mocks for the normalizer."""
    downloader = Mock()
    downloader.download_media = AsyncMock(return_value=b"media-bytes")
    transcriber = Mock()
    transcriber.transcribe = AsyncMock(return_value=None)
    ocr = Mock()
    ocr.ocr = AsyncMock(return_value="")
    return transcriber, ocr, downloader


@pytest.fixture
def normalizer(media_services):
    transcriber, ocr, downloader = media_services
    return MessageNormalizer(transcriber=transcriber, ocr=ocr, downloader=downloader)


@pytest.fixture
def backends():
    return build_backends("memory")


@pytest.fixture
def ledger(backends):
    return backends.ledger


@pytest.fixture
def pipeline(backends, cascade, normalizer, emitter):
    return MessagePipeline.from_backends(
        backends,
        cascade=cascade,
        normalizer=normalizer,
        emitter=emitter,
        wait_seconds=0.05,
        retry_interval=0.01,
    )


@pytest.fixture
def engine(pipeline):
    return pipeline.engine


@pytest.fixture
def make_inbound():
    """Factory for inbound messages with unique provider ids."""
    counter = itertools.count(1)

    def _make(body: str = "", sid: Optional[str] = None, **kwargs) -> InboundMessage:
        media = kwargs.pop("media", [])
        return InboundMessage(
            provider_message_id=sid or f"SMin{next(counter):04d}",
            user_id=kwargs.pop("user_id", USER),
            tenant_id=kwargs.pop("tenant_id", TENANT),
            from_number=kwargs.pop("from_number", FROM),
            body=body,
            media=[MediaRef(**m) if isinstance(m, dict) else m for m in media],
            **kwargs,
        )

    return _make


@pytest.fixture
def send(pipeline, make_inbound):
    """Run one message through the pipeline and return the reply."""

    async def _send(body: str = "", **kwargs) -> Reply:
        result = await pipeline.process(make_inbound(body, **kwargs))
        assert result.success or result.exception is not None
        return pipeline.emitter.last

    return _send
