"""Tests for the OpenRouter oracle and JSON extraction from model replies."""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from sidecar.llm_client import OpenRouterOracle, OracleError, create_oracle, extract_json_object


def _client(create: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = create
    return client


def _reply(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3),
    )


class TestOpenRouterOracle:
    @pytest.mark.asyncio
    async def test_complete_returns_message_text(self):
        create = AsyncMock(return_value=_reply("0.8"))
        oracle = OpenRouterOracle(_client(create), model="openai/gpt-4o-mini", max_tokens=300, timeout=5)

        assert await oracle.complete("rate this", caller="injection.relevance") == "0.8"
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "openai/gpt-4o-mini"
        assert kwargs["max_tokens"] == 300
        assert kwargs["temperature"] == 0
        assert kwargs["messages"] == [{"role": "user", "content": "rate this"}]

    @pytest.mark.asyncio
    async def test_gpt5_models_use_temperature_one(self):
        create = AsyncMock(return_value=_reply("ok"))
        oracle = OpenRouterOracle(_client(create), model="openai/gpt-5-mini", max_tokens=100, timeout=5)
        await oracle.complete("hi", caller="test", max_tokens=20)
        assert create.await_args.kwargs["temperature"] == 1
        assert create.await_args.kwargs["max_tokens"] == 20

    @pytest.mark.asyncio
    async def test_failures_become_oracle_errors(self):
        failing = OpenRouterOracle(
            _client(AsyncMock(side_effect=ConnectionError("reset"))), model="m", max_tokens=10, timeout=5
        )
        with pytest.raises(OracleError, match="reset"):
            await failing.complete("hi", caller="test")

        empty = OpenRouterOracle(_client(AsyncMock(return_value=_reply(""))), model="m", max_tokens=10, timeout=5)
        with pytest.raises(OracleError, match="empty"):
            await empty.complete("hi", caller="test")

    @pytest.mark.asyncio
    async def test_slow_calls_time_out(self):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        oracle = OpenRouterOracle(_client(AsyncMock(side_effect=slow)), model="m", max_tokens=10, timeout=0.01)
        with pytest.raises(OracleError, match="TimeoutError"):
            await oracle.complete("hi", caller="test")


def test_create_oracle_requires_api_key(make_settings):
    assert create_oracle(make_settings()) is None
    oracle = create_oracle(make_settings(openrouter_api_key="sk-test", oracle_model="openai/gpt-4o-mini"))
    assert isinstance(oracle, OpenRouterOracle)
    assert oracle.model == "openai/gpt-4o-mini"


def test_extract_json_object_handles_fences_and_prose():
    assert extract_json_object('```json\n{"shouldResearch": true}\n```') == {"shouldResearch": True}
    assert extract_json_object('Sure! {"query": "x", "nested": {"a": 1}} hope that helps') == {
        "query": "x",
        "nested": {"a": 1},
    }
    assert extract_json_object("{broken {\"ok\": 1}") == {"ok": 1}
    assert extract_json_object("no json here") is None
