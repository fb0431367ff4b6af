import pytest

from errors import ModelError
from llm_client import LLMClient


class FakeMessage:
    def __init__(self, content, refusal=None):
        self.content = content
        self.refusal = refusal


class FakeChoice:
    def __init__(self, content, finish_reason="stop", refusal=None):
        self.message = FakeMessage(content, refusal)
        self.finish_reason = finish_reason


class FakeResp:
    def __init__(self, choices):
        self.choices = choices


def make_fake_client(response=None, error=None):
    calls = []

    class FakeClient:
        class chat:
            class completions:
                @staticmethod
                async def create(**kwargs):  # type: ignore
                    calls.append(kwargs)
                    if error is not None:
                        raise error
                    return response

    return FakeClient(), calls


@pytest.mark.asyncio
async def test_returns_stripped_text_and_requests_json_mode():
    client, calls = make_fake_client(FakeResp([FakeChoice('  {"summary": "ok"}  ')]))
    llm = LLMClient(model="test-model", client_override=client)

    result = await llm.chat_completion(
        [{"role": "user", "content": "hi"}], purpose="article_summary", json_mode=True
    )

    assert result == '{"summary": "ok"}'
    assert calls[0]["model"] == "test-model"
    assert calls[0]["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_plain_mode_omits_response_format():
    client, calls = make_fake_client(FakeResp([FakeChoice("hello")]))
    llm = LLMClient(client_override=client)

    assert await llm.chat_completion([{"role": "user", "content": "hi"}]) == "hello"
    assert "response_format" not in calls[0]


@pytest.mark.asyncio
async def test_list_of_parts_content_is_joined():
    parts = [{"type": "text", "text": "first"}, {"type": "reasoning", "text": ""}, {"type": "text", "text": "second"}]
    client, _ = make_fake_client(FakeResp([FakeChoice(parts)]))
    llm = LLMClient(client_override=client)

    assert await llm.chat_completion([{"role": "user", "content": "hi"}]) == "first\nsecond"


@pytest.mark.asyncio
async def test_truncated_empty_content_returns_none():
    parts = [{"type": "reasoning", "text": ""}, {"type": "metadata", "text": ""}]
    client, _ = make_fake_client(FakeResp([FakeChoice(parts, finish_reason="length")]))
    llm = LLMClient(client_override=client)

    assert await llm.chat_completion([{"role": "user", "content": "hi"}]) is None
    with pytest.raises(ModelError) as excinfo:
        await llm.complete([{"role": "user", "content": "hi"}])
    assert excinfo.value.details["finish_reason"] == "length"


@pytest.mark.asyncio
async def test_refusal_and_missing_choices_return_none():
    refused, _ = make_fake_client(FakeResp([FakeChoice("text", refusal="content_filter")]))
    assert await LLMClient(client_override=refused).chat_completion([{"role": "user", "content": "x"}]) is None

    empty, _ = make_fake_client(FakeResp([]))
    assert await LLMClient(client_override=empty).chat_completion([{"role": "user", "content": "x"}]) is None


@pytest.mark.asyncio
async def test_transport_failure_is_absorbed():
    client, _ = make_fake_client(error=RuntimeError("connection reset"))
    llm = LLMClient(client_override=client)

    assert await llm.chat_completion([{"role": "user", "content": "hi"}]) is None
    with pytest.raises(ModelError, match="connection reset"):
        await llm.complete([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_without_api_key_client_is_unavailable():
    llm = LLMClient(api_key="")

    assert llm.available is False
    assert await llm.chat_completion([{"role": "user", "content": "hi"}]) is None
    await llm.close()


@pytest.mark.asyncio
async def test_empty_message_list_is_rejected():
    client, calls = make_fake_client(FakeResp([FakeChoice("unused")]))
    llm = LLMClient(client_override=client)

    assert await llm.chat_completion([]) is None
    assert calls == []
