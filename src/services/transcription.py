"""Audio transcription (Whisper) and image OCR (vision chat completion)."""
import base64
from typing import Optional

from langsmith import traceable
from openai import AsyncOpenAI

from src.config import settings
from src.services.retry import retry_on_api_error
from src.utils.logger import log

_AUDIO_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/amr": "amr",
    "audio/wav": "wav",
}


class TranscriptionService:
    """Transcribe voice notes with Whisper."""

    def __init__(self):
        self._client: Optional[AsyncOpenAI] = None
        self.model = settings.whisper_model

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    @traceable(name="whisper_transcribe_audio", tags=["whisper", "transcription"])
    @retry_on_api_error(max_attempts=2)
    async def transcribe(self, audio: bytes, mime_type: str) -> Optional[str]:
        """Transcribe raw audio bytes.

        Args:
            audio: Audio file bytes
            mime_type: Content type reported by the transport

        Returns:
            Transcribed text, or None when nothing usable came back
        """
        if not settings.openai_api_key:
            log.warning("🎙️ Transcription skipped: OPENAI_API_KEY not set")
            return None

        base_type = (mime_type or "audio/ogg").split(";")[0].strip()
        extension = _AUDIO_EXTENSIONS.get(base_type, "ogg")

        transcript = await self.client.audio.transcriptions.create(
            model=self.model,
            file=(f"voice.{extension}", audio, base_type),
            response_format="text",
        )
        text = transcript if isinstance(transcript, str) else transcript.text
        text = (text or "").strip()
        log.info(f"🎙️ Audio transcription completed: {text[:50]}...")
        return text or None


class OCRService:
    """Read receipt text out of images with a vision-capable chat model."""

    SYSTEM_PROMPT = (
        "Transcribe every piece of text visible in the image, line by line, "
        "exactly as printed. Output only the text."
    )

    def __init__(self):
        self._client: Optional[AsyncOpenAI] = None
        self.model = settings.ocr_model

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    @traceable(name="vision_ocr", tags=["ocr"])
    @retry_on_api_error(max_attempts=2)
    async def ocr(self, image: bytes, mime_type: str = "image/jpeg") -> str:
        if not settings.openai_api_key:
            log.warning("🧾 OCR skipped: OPENAI_API_KEY not set")
            return ""

        encoded = base64.b64encode(image).decode("ascii")
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=0,
            messages=[
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                        }
                    ],
                },
            ],
        )
        text = (response.choices[0].message.content or "").strip()
        log.info(f"🧾 OCR completed: {len(text)} characters")
        return text


# Global instances
transcription_service = TranscriptionService()
ocr_service = OCRService()
