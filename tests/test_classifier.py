"""
Tests for classifier.py: verdict parsing, prompt construction and the
mapping of Gemini API errors onto RateLimitError / ClassifierError.
"""

import asyncio
from types import SimpleNamespace

import pytest
from google.genai import errors as genai_errors

from termcrawler.classifier import (
    MAX_PROMPT_CHARS,
    NEGATIVE_RESPONSE,
    POSITIVE_PREFIX,
    GeminiClassifier,
    Verdict,
    build_prompt,
)
from termcrawler.errors import ClassifierError, RateLimitError


class _FakeModels:

    def __init__(self, result):
        self.result = result
        self.calls = []

    async def generate_content(self, model, contents):
        self.calls.append((model, contents))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def _classifier(result):
    classifier = GeminiClassifier(api_key="test-key", model="test-model")
    models = _FakeModels(result)
    classifier._client = SimpleNamespace(aio=SimpleNamespace(models=models))
    return classifier, models


class TestVerdict:

    def test_positive_prefix(self):
        v = Verdict.from_response(f"  {POSITIVE_PREFIX}: page describes the DEI office\n")
        assert v.positive is True
        assert v.analysis.startswith(POSITIVE_PREFIX)

    def test_negative(self):
        assert Verdict.from_response(NEGATIVE_RESPONSE).positive is False

    def test_anything_else_is_negative(self):
        assert Verdict.from_response("Maybe? AI_Crawler: Content Found").positive is False
        assert Verdict.from_response("").positive is False


class TestPrompt:

    def test_text_truncated(self):
        prompt = build_prompt("a" * (MAX_PROMPT_CHARS + 500))
        assert "a" * MAX_PROMPT_CHARS in prompt
        assert "a" * (MAX_PROMPT_CHARS + 1) not in prompt

    def test_instructions_included(self):
        prompt = build_prompt("some page")
        assert "some page" in prompt
        assert POSITIVE_PREFIX in prompt
        assert NEGATIVE_RESPONSE in prompt


class TestClassify:

    def test_response_parsed(self):
        classifier, models = _classifier(SimpleNamespace(text=f"{POSITIVE_PREFIX}: yes"))
        verdict = asyncio.run(classifier.classify("page text", "https://example.edu/a"))
        assert verdict.positive is True
        assert models.calls[0][0] == "test-model"
        assert "page text" in models.calls[0][1]

    def test_empty_response_is_negative(self):
        classifier, _ = _classifier(SimpleNamespace(text=None))
        assert asyncio.run(classifier.classify("x", "https://example.edu/a")).positive is False

    def test_429_is_rate_limit(self):
        error = genai_errors.ClientError(
            429, {"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}}
        )
        classifier, _ = _classifier(error)
        with pytest.raises(RateLimitError):
            asyncio.run(classifier.classify("x", "https://example.edu/a"))

    def test_other_api_error_is_classifier_error(self):
        error = genai_errors.ServerError(
            500, {"error": {"code": 500, "message": "Internal", "status": "INTERNAL"}}
        )
        classifier, _ = _classifier(error)
        with pytest.raises(ClassifierError) as info:
            asyncio.run(classifier.classify("x", "https://example.edu/a"))
        assert not isinstance(info.value, RateLimitError)

    def test_unexpected_exception_wrapped(self):
        classifier, _ = _classifier(ConnectionError("reset by peer"))
        with pytest.raises(ClassifierError):
            asyncio.run(classifier.classify("x", "https://example.edu/a"))
