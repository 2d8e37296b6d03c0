import math
from io import BytesIO
from types import SimpleNamespace

import httpx
import openai
import pytest

from splitscan.core.config import Settings
from splitscan.services.ocr_provider import (
    DisabledOcrProvider,
    OcrFailureReason,
    OpenAIVisionOcrProvider,
    build_ocr_provider,
)


def _status_error(code: int) -> openai.APIStatusError:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(code, request=request)
    return openai.APIStatusError(f"HTTP {code}", response=response, body=None)


def _completion(text: str, tokens=None):
    logprobs = SimpleNamespace(content=tokens) if tokens is not None else None
    choice = SimpleNamespace(message=SimpleNamespace(content=text), logprobs=logprobs)
    return SimpleNamespace(choices=[choice])


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _provider(*outcomes, max_attempts=3):
    completions = FakeCompletions(outcomes)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    sleeps = []
    provider = OpenAIVisionOcrProvider(
        client, model="gpt-4o-mini", max_attempts=max_attempts, base_delay_seconds=1.0, sleep=sleeps.append
    )
    return provider, completions, sleeps


def _image():
    return BytesIO(b"\xff\xd8\xff-fake-jpeg")


def test_success_returns_text_and_word_confidence():
    tokens = [
        SimpleNamespace(token="Milk", logprob=math.log(0.9)),
        SimpleNamespace(token=" 3", logprob=math.log(0.5)),
        SimpleNamespace(token=".99", logprob=math.log(0.8)),
    ]
    provider, completions, sleeps = _provider(_completion("Milk 3.99", tokens))

    res = provider.extract_text(_image())

    assert res.success
    assert res.raw_text == "Milk 3.99"
    assert res.attempts == 1
    # words: "Milk" (0.9) and " 3.99" (0.5 * 0.8)
    assert res.confidence == pytest.approx((0.9 + 0.4) / 2)
    assert sleeps == []

    kwargs = completions.calls[0]
    assert kwargs["temperature"] == 0
    assert kwargs["logprobs"] is True
    image_part = kwargs["messages"][0]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_confidence_is_none_without_logprobs():
    provider, _, _ = _provider(_completion("Milk 3.99"))
    assert provider.extract_text(_image()).confidence is None


def test_transient_errors_are_retried_with_linear_backoff():
    provider, completions, sleeps = _provider(
        _status_error(429), _status_error(503), _completion("Bread 2.49", [])
    )

    res = provider.extract_text(_image())

    assert res.success
    assert res.attempts == 3
    assert sleeps == [1.0, 2.0]
    # the stream is rewound, so every attempt sends the same image
    urls = {c["messages"][0]["content"][1]["image_url"]["url"] for c in completions.calls}
    assert len(urls) == 1


def test_gives_up_after_three_transient_failures():
    provider, completions, sleeps = _provider(_status_error(500), _status_error(502), _status_error(504))

    res = provider.extract_text(_image())

    assert not res.success
    assert res.failure_reason is OcrFailureReason.PROVIDER_ERROR
    assert res.attempts == 3
    assert len(completions.calls) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.parametrize("code", [400, 401, 404, 422])
def test_non_transient_errors_fail_immediately(code):
    provider, completions, sleeps = _provider(_status_error(code))

    res = provider.extract_text(_image())

    assert not res.success
    assert res.failure_reason is OcrFailureReason.PROVIDER_ERROR
    assert str(code) in res.error_message
    assert len(completions.calls) == 1
    assert sleeps == []


def test_connection_errors_are_provider_errors():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    provider, _, sleeps = _provider(openai.APIConnectionError(request=request))

    res = provider.extract_text(_image())

    assert res.failure_reason is OcrFailureReason.PROVIDER_ERROR
    assert sleeps == []


def test_empty_text_is_no_text_found():
    provider, _, _ = _provider(_completion("   \n "))

    res = provider.extract_text(_image())

    assert not res.success
    assert res.failure_reason is OcrFailureReason.NO_TEXT_FOUND


def test_disabled_provider_reports_not_configured():
    res = DisabledOcrProvider().extract_text(_image())

    assert not res.success
    assert res.failure_reason is OcrFailureReason.NOT_CONFIGURED
    assert res.error_message


def test_build_without_key_is_disabled():
    provider = build_ocr_provider(Settings(OPENAI_API_KEY=""))
    assert isinstance(provider, DisabledOcrProvider)


def test_build_with_key_disables_sdk_retries():
    provider = build_ocr_provider(Settings(OPENAI_API_KEY="sk-test", OCR_MAX_ATTEMPTS=3))

    assert isinstance(provider, OpenAIVisionOcrProvider)
    assert provider.client.max_retries == 0
    assert provider.max_attempts == 3
