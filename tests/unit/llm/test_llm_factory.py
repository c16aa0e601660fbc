from unittest import mock

import pydantic
import pytest

from codemend.config.llm import LLMConfig
from codemend.llm.client import DummyLLMClient, LLMRequest, call_with_retries
from codemend.llm.factory import LLMFactory
from codemend.llm.providers.openai import OpenAIClient


class StatusError(Exception):
    def __init__(self, status):
        super().__init__(f"HTTP {status}")
        self.status = status


def test_disabled_config_has_no_client():
    assert LLMFactory.create_client(LLMConfig(enabled=False)) is None


def test_dummy_client_uses_default_confidence():
    client = LLMFactory.create_client(LLMConfig(default_confidence=0.7))
    assert isinstance(client, DummyLLMClient)
    response = client.generate(LLMRequest(prompt="fix", metadata={"original_code": "x = 1\n"}))
    assert response.content == "```\nx = 1\n```\nCONFIDENCE: 0.7"


def test_openai_client_is_built_from_config():
    client = LLMFactory.create_client(LLMConfig(provider="openai", model="gpt-4o-mini", api_key="sk-test"))
    assert isinstance(client, OpenAIClient)
    assert client.config.model == "gpt-4o-mini"


def test_unknown_provider_is_rejected_by_config():
    with pytest.raises(pydantic.ValidationError):
        LLMConfig(provider="mystery")


@mock.patch("time.sleep")
def test_retries_transient_errors_until_success(sleep):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("reset")
        return "ok"

    assert call_with_retries(flaky, (ConnectionError,), max_tries=3) == "ok"
    assert len(calls) == 3


@mock.patch("time.sleep")
def test_gives_up_on_non_retryable_status(sleep):
    calls = []

    def unauthorized():
        calls.append(1)
        raise StatusError(401)

    with pytest.raises(StatusError):
        call_with_retries(unauthorized, (StatusError,), max_tries=5, status_of=lambda e: e.status)
    assert len(calls) == 1


@mock.patch("time.sleep")
def test_stops_after_max_tries(sleep):
    calls = []

    def overloaded():
        calls.append(1)
        raise StatusError(503)

    with pytest.raises(StatusError):
        call_with_retries(overloaded, (StatusError,), max_tries=2, status_of=lambda e: e.status)
    assert len(calls) == 2
