"""Tests for text command interpreters."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from guardlink.commands.models import CommandAction
from guardlink.config import Settings
from guardlink.errors import InterpreterError
from guardlink.interpreter import create_interpreter
from guardlink.interpreter.keyword import KeywordInterpreter
from guardlink.interpreter.llm import OpenAIInterpreter


class TestKeywordInterpreter:
    @pytest.mark.parametrize(
        "text, action, target",
        [
            ("Lock Emma's phone", CommandAction.lock, "emma"),
            ("unlock tablet-2", CommandAction.unlock, "tablet-2"),
            ("Where is Max?", CommandAction.locate, "max"),
            ("find the laptop", CommandAction.locate, "laptop"),
            ("EMERGENCY lockdown", CommandAction.emergency_lockdown, None),
            ("lock everything now", CommandAction.emergency_lockdown, None),
            ("release the lockdown", CommandAction.emergency_release, None),
        ],
    )
    def test_recognized(self, text, action, target):
        result = KeywordInterpreter().interpret(text)
        assert result.action == action
        assert result.target == target
        assert result.confidence >= 0.8

    def test_missing_target_lowers_confidence(self):
        result = KeywordInterpreter().interpret("lock")
        assert result.action == CommandAction.lock
        assert result.target is None
        assert result.confidence < 0.5

    def test_unrecognized(self):
        result = KeywordInterpreter().interpret("what's for dinner")
        assert result.action is None
        assert result.confidence == 0.0


def _mock_openai(content: object) -> MagicMock:
    response = MagicMock()
    response.json.return_value = {
        "choices": [{"message": {"content": json.dumps(content)}}]
    }
    client = MagicMock()
    client.post.return_value = response
    client.__enter__ = MagicMock(return_value=client)
    client.__exit__ = MagicMock(return_value=False)
    return client


class TestOpenAIInterpreter:
    def test_parses_completion(self):
        client = _mock_openai(
            {
                "action": "lock_device",
                "target": "Emma",
                "confidence": 0.92,
                "explanation": "Emma's device will be locked",
            }
        )
        with patch("guardlink.interpreter.llm.httpx.Client") as mock_client_cls:
            mock_client_cls.return_value = client
            result = OpenAIInterpreter(api_key="sk-test").interpret("Lock Emma's phone")

        assert result.action == CommandAction.lock
        assert result.target == "Emma"
        assert result.confidence == pytest.approx(0.92)

        url = client.post.call_args[0][0]
        assert url == "https://api.openai.com/v1/chat/completions"
        sent = client.post.call_args[1]
        assert sent["headers"]["Authorization"] == "Bearer sk-test"
        assert sent["json"]["response_format"] == {"type": "json_object"}

    def test_emergency_alias(self):
        client = _mock_openai({"action": "emergency_mode", "target": None, "confidence": 0.9})
        with patch("guardlink.interpreter.llm.httpx.Client") as mock_client_cls:
            mock_client_cls.return_value = client
            result = OpenAIInterpreter(api_key="sk-test").interpret("lock everything")
        assert result.action == CommandAction.emergency_lockdown
        assert result.target is None

    def test_unsupported_action_and_clamped_confidence(self):
        client = _mock_openai({"action": "block_app", "target": "Max", "confidence": 7})
        with patch("guardlink.interpreter.llm.httpx.Client") as mock_client_cls:
            mock_client_cls.return_value = client
            result = OpenAIInterpreter(api_key="sk-test").interpret("block youtube for max")
        assert result.action is None
        assert result.confidence == 1.0

    def test_http_error_raises(self):
        client = MagicMock()
        client.post.side_effect = httpx.ConnectError("connection refused")
        client.__enter__ = MagicMock(return_value=client)
        client.__exit__ = MagicMock(return_value=False)
        with patch("guardlink.interpreter.llm.httpx.Client") as mock_client_cls:
            mock_client_cls.return_value = client
            with pytest.raises(InterpreterError):
                OpenAIInterpreter(api_key="sk-test").interpret("lock emma")

    def test_invalid_json_raises(self):
        response = MagicMock()
        response.json.return_value = {"choices": [{"message": {"content": "not json"}}]}
        client = MagicMock()
        client.post.return_value = response
        client.__enter__ = MagicMock(return_value=client)
        client.__exit__ = MagicMock(return_value=False)
        with patch("guardlink.interpreter.llm.httpx.Client") as mock_client_cls:
            mock_client_cls.return_value = client
            with pytest.raises(InterpreterError):
                OpenAIInterpreter(api_key="sk-test").interpret("lock emma")


class TestCreateInterpreter:
    def test_keyword(self):
        interpreter = create_interpreter(Settings(interpreter_mode="keyword"))
        assert isinstance(interpreter, KeywordInterpreter)

    def test_openai_without_key(self):
        cfg = Settings(interpreter_mode="openai", openai_api_key=None)
        assert create_interpreter(cfg) is None

    def test_openai_with_key(self):
        cfg = Settings(interpreter_mode="openai", openai_api_key="sk-test", openai_model="gpt-x")
        interpreter = create_interpreter(cfg)
        assert isinstance(interpreter, OpenAIInterpreter)
        assert interpreter.model == "gpt-x"

    def test_none(self):
        assert create_interpreter(Settings(interpreter_mode="none")) is None
