"""Tests for the retry policy, JSON parsing and the Translator."""
import asyncio

import pytest

from errors import TranslationFailed
from translation import (
    MalformedResponse, Translator, generate_with_retry, is_retryable, parse_json_response,
)
from tests.conftest import ProviderError, StubProvider, chapter_json


class TestParseJsonResponse:
    def test_direct_json(self):
        assert parse_json_response('{"translatedText": "hi"}') == {"translatedText": "hi"}

    def test_markdown_code_fence(self):
        text = '```json\n{"chapterNumber": 3}\n```'
        assert parse_json_response(text) == {"chapterNumber": 3}

    def test_json_embedded_in_prose(self):
        text = 'Here is the result: {"title": "再会"} hope it helps'
        assert parse_json_response(text)["title"] == "再会"

    def test_control_characters_tolerated(self):
        text = '{"translatedContent": "<p>line\nbreak</p>"}'
        assert parse_json_response(text)["translatedContent"] == "<p>line\nbreak</p>"

    def test_invalid_raises(self):
        with pytest.raises(MalformedResponse):
            parse_json_response("Sorry, I cannot help with that.")

    def test_non_object_raises(self):
        with pytest.raises(MalformedResponse):
            parse_json_response("[1, 2, 3]")


class TestIsRetryable:
    @pytest.mark.parametrize("exc", [
        ProviderError(429, "Too Many Requests"),
        ProviderError(503, "Service Unavailable"),
        Exception("RESOURCE_EXHAUSTED: quota exceeded"),
        Exception("The model is overloaded. Please try again later."),
        asyncio.TimeoutError(),
    ])
    def test_retryable(self, exc):
        assert is_retryable(exc)

    @pytest.mark.parametrize("exc", [
        ProviderError(400, "Invalid argument"),
        ProviderError(403, "Permission denied"),
        ValueError("bad prompt"),
        Exception("input exceeds 5000 tokens"),
        Exception("400 INVALID_ARGUMENT: max_output_tokens must be at most 500"),
        ProviderError(400, "INVALID_ARGUMENT: try again with a shorter prompt"),
    ])
    def test_fatal(self, exc):
        assert not is_retryable(exc)


class TestGenerateWithRetry:
    async def test_succeeds_after_two_retryable_failures(self):
        provider = StubProvider(
            ProviderError(429, "rate limit"),
            ProviderError(503, "unavailable"),
            '{"translatedText": "ok"}',
        )
        result = await generate_with_retry(provider, "prompt", max_attempts=3, base_delay=0)

        assert result == {"translatedText": "ok"}
        assert provider.calls == 3

    async def test_gives_up_after_max_attempts(self):
        provider = StubProvider(ProviderError(429, "rate limit"))

        with pytest.raises(ProviderError):
            await generate_with_retry(provider, "prompt", max_attempts=3, base_delay=0)
        assert provider.calls == 3

    async def test_fatal_error_fails_on_first_attempt(self):
        provider = StubProvider(ProviderError(400, "invalid argument"))

        with pytest.raises(ProviderError):
            await generate_with_retry(provider, "prompt", max_attempts=3, base_delay=0)
        assert provider.calls == 1

    async def test_retryable_code_inside_fatal_message_is_ignored(self):
        provider = StubProvider(
            Exception("400 INVALID_ARGUMENT: max_output_tokens must be at most 500"),
            '{"translatedText": "ok"}',
        )

        with pytest.raises(Exception, match="INVALID_ARGUMENT"):
            await generate_with_retry(provider, "prompt", max_attempts=3, base_delay=0)
        assert provider.calls == 1

    async def test_malformed_response_is_not_retried(self):
        provider = StubProvider("not json at all")

        with pytest.raises(MalformedResponse):
            await generate_with_retry(provider, "prompt", max_attempts=3, base_delay=0)
        assert provider.calls == 1

    async def test_hung_call_times_out_and_retries(self):
        class SlowProvider:
            calls = 0

            async def generate(self, prompt):
                self.calls += 1
                await asyncio.sleep(5)
                return "{}"

        provider = SlowProvider()
        with pytest.raises(asyncio.TimeoutError):
            await generate_with_retry(provider, "prompt", max_attempts=2, base_delay=0, timeout=0.01)
        assert provider.calls == 2

    async def test_custom_predicate(self):
        provider = StubProvider(ValueError("flaky"), '{"ok": true}')
        result = await generate_with_retry(
            provider, "prompt", max_attempts=2, base_delay=0,
            retryable=lambda exc: isinstance(exc, ValueError),
        )
        assert result == {"ok": True}


class TestTranslator:
    async def test_translate_chapter(self):
        provider = StubProvider(chapter_json(chapterNumber=5, title="第5話：再会"))
        data = await Translator(provider).translate_chapter("Light novel style", "Aria = アリア", "本文")

        assert data["chapterNumber"] == 5
        prompt = provider.prompts[0]
        assert "Light novel style" in prompt
        assert "Aria = アリア" in prompt
        assert "本文" in prompt

    def test_source_text_is_truncated(self, monkeypatch):
        from config import settings
        monkeypatch.setattr(settings, "translation_source_limit", 10)

        prompt = Translator.build_chapter_prompt("style", "", "x" * 50)
        assert "x" * 10 in prompt
        assert "x" * 11 not in prompt

    def test_empty_glossary_rendered_as_none(self):
        prompt = Translator.build_snippet_prompt("style", "", "text")
        assert "Glossary: None" in prompt

    async def test_busy_message_after_retries(self):
        provider = StubProvider(ProviderError(429, "rate limit"))

        with pytest.raises(TranslationFailed) as exc_info:
            await Translator(provider).translate_snippet("style", "", "hello")
        assert "busy" in exc_info.value.message
        assert provider.calls == 3

    async def test_fatal_error_message(self):
        provider = StubProvider(ProviderError(400, "invalid argument"))

        with pytest.raises(TranslationFailed) as exc_info:
            await Translator(provider).translate_snippet("style", "", "hello")
        assert exc_info.value.message.startswith("Translation failed")
        assert provider.calls == 1

    async def test_malformed_response(self):
        provider = StubProvider("<html>oops</html>")

        with pytest.raises(TranslationFailed) as exc_info:
            await Translator(provider).translate_chapter("style", "", "text")
        assert "invalid response" in exc_info.value.message

    async def test_missing_content_fails(self):
        provider = StubProvider(chapter_json(translatedContent=""))

        with pytest.raises(TranslationFailed):
            await Translator(provider).translate_chapter("style", "", "text")
