from __future__ import annotations

import base64
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Callable, Protocol

import openai
from openai import OpenAI

from splitscan.core.config import Settings, settings

logger = logging.getLogger(__name__)

# rate limiting and server-side failures; everything else fails at once
TRANSIENT_STATUS_CODES = frozenset({429, 500, 501, 502, 503, 504})

OCR_PROMPT = (
    "You are an OCR engine for receipts.\n"
    "Task: extract ALL visible text from the receipt image.\n"
    "Rules:\n"
    "- Output ONLY the extracted text, no commentary.\n"
    "- One physical receipt line per output line, top to bottom.\n"
    "- Keep prices exactly as printed (e.g. 3.99).\n"
    "- If a token is unclear, keep the best guess rather than omitting.\n"
    "- If the image contains no readable text, output nothing.\n"
)


class OcrFailureReason(str, Enum):
    NOT_CONFIGURED = "not_configured"
    NO_TEXT_FOUND = "no_text_found"
    PROVIDER_ERROR = "provider_error"


@dataclass
class OcrResponse:
    success: bool
    raw_text: str = ""
    confidence: float | None = None
    failure_reason: OcrFailureReason | None = None
    error_message: str | None = None
    attempts: int = 0

    @classmethod
    def failure(cls, reason: OcrFailureReason, message: str, attempts: int = 0) -> "OcrResponse":
        return cls(success=False, failure_reason=reason, error_message=message, attempts=attempts)


class OcrProvider(Protocol):
    def extract_text(self, image: BinaryIO, mime_type: str = "image/jpeg") -> OcrResponse: ...


class DisabledOcrProvider:
    """Stand-in used when no provider credentials are configured."""

    def extract_text(self, image: BinaryIO, mime_type: str = "image/jpeg") -> OcrResponse:
        return OcrResponse.failure(OcrFailureReason.NOT_CONFIGURED, "OCR provider is not configured")


def _word_confidence(tokens) -> float | None:
    """Mean word probability from token logprobs (a word's probability is the product of its tokens')."""
    words: list[float] = []
    current: float | None = None

    for tok in tokens:
        text = tok.token or ""
        if not text.strip():
            if current is not None:
                words.append(math.exp(current))
                current = None
            continue
        if text[0].isspace() and current is not None:
            words.append(math.exp(current))
            current = None
        current = (current or 0.0) + tok.logprob

    if current is not None:
        words.append(math.exp(current))

    if not words:
        return None
    return sum(words) / len(words)


class OpenAIVisionOcrProvider:
    def __init__(
        self,
        client: OpenAI,
        model: str,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.model = model
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = base_delay_seconds
        self._sleep = sleep

    def _call(self, data_url: str):
        return self.client.chat.completions.create(
            model=self.model,
            messages=[{
                "role": "user",
                "content": [
                    {"type": "text", "text": OCR_PROMPT},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }],
            temperature=0,
            max_tokens=2000,
            logprobs=True,
        )

    @staticmethod
    def _read_response(resp) -> tuple[str, float | None]:
        choice = resp.choices[0]
        text = (choice.message.content or "").strip()
        logprobs = getattr(choice, "logprobs", None)
        tokens = getattr(logprobs, "content", None) or []
        return text, _word_confidence(tokens)

    def extract_text(self, image: BinaryIO, mime_type: str = "image/jpeg") -> OcrResponse:
        for attempt in range(1, self.max_attempts + 1):
            # the same payload is resent on every attempt
            image.seek(0)
            b64 = base64.b64encode(image.read()).decode("ascii")
            data_url = f"data:{mime_type};base64,{b64}"

            try:
                resp = self._call(data_url)
            except openai.APIStatusError as e:
                transient = e.status_code in TRANSIENT_STATUS_CODES
                if transient and attempt < self.max_attempts:
                    delay = attempt * self.base_delay_seconds
                    logger.warning(
                        "Transient OCR provider error %s (attempt %d/%d), retrying in %.1fs",
                        e.status_code, attempt, self.max_attempts, delay,
                    )
                    self._sleep(delay)
                    continue

                if transient:
                    message = f"OCR provider failed after {attempt} attempts (HTTP {e.status_code})"
                else:
                    message = f"OCR provider rejected the request (HTTP {e.status_code}): {e.message}"
                logger.error("%s", message)
                return OcrResponse.failure(OcrFailureReason.PROVIDER_ERROR, message, attempts=attempt)
            except openai.OpenAIError as e:
                logger.error("OCR provider call failed: %s", e)
                return OcrResponse.failure(
                    OcrFailureReason.PROVIDER_ERROR, f"OCR provider call failed: {e}", attempts=attempt
                )

            text, confidence = self._read_response(resp)
            if not text:
                return OcrResponse.failure(
                    OcrFailureReason.NO_TEXT_FOUND, "No text could be extracted from the image", attempts=attempt
                )

            return OcrResponse(success=True, raw_text=text, confidence=confidence, attempts=attempt)

        # unreachable: the last attempt always returns
        raise AssertionError("retry loop exited without a result")


def build_ocr_provider(cfg: Settings = settings) -> OcrProvider:
    if not cfg.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; OCR is disabled and receipts will fail as not configured")
        return DisabledOcrProvider()

    # retries are handled by OpenAIVisionOcrProvider, not the SDK
    client = OpenAI(api_key=cfg.OPENAI_API_KEY, max_retries=0, timeout=cfg.OCR_TIMEOUT_SECONDS)
    return OpenAIVisionOcrProvider(
        client,
        model=cfg.OPENAI_OCR_MODEL,
        max_attempts=cfg.OCR_MAX_ATTEMPTS,
        base_delay_seconds=cfg.OCR_RETRY_BASE_DELAY_SECONDS,
    )
