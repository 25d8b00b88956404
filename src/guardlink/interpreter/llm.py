"""Interpreter backed by the OpenAI chat completions API (JSON mode)."""

import json
import logging
from typing import Any

import httpx

from guardlink.commands.models import CommandAction
from guardlink.errors import InterpreterError
from guardlink.interpreter.base import CommandInterpreter, Interpretation

logger = logging.getLogger(__name__)

# Model vocabulary -> supported actions. Anything else is not actionable here.
_ACTION_ALIASES: dict[str, CommandAction] = {
    "lock_device": CommandAction.lock,
    "lock": CommandAction.lock,
    "unlock_device": CommandAction.unlock,
    "unlock": CommandAction.unlock,
    "locate_device": CommandAction.locate,
    "locate": CommandAction.locate,
    "emergency_mode": CommandAction.emergency_lockdown,
    "emergency_lockdown": CommandAction.emergency_lockdown,
    "emergency_release": CommandAction.emergency_release,
    "safe_mode": CommandAction.emergency_release,
}

_SYSTEM_PROMPT = """\
You are an assistant for a family safety app. Parse commands about the
family's devices.

Return a JSON object with:
- action: one of [lock_device, unlock_device, locate_device, emergency_mode, emergency_release]
- target: the family member or device the action applies to (null for emergency actions)
- confidence: 0-1 score of how confident you are in the interpretation
- explanation: human-readable explanation of what will happen

Examples:
"Lock Emma's phone" -> {"action": "lock_device", "target": "Emma", "confidence": 0.9,
  "explanation": "Emma's device will be locked immediately"}
"Lock everything now" -> {"action": "emergency_mode", "target": null, "confidence": 0.85,
  "explanation": "Every family device will be locked"}
"""


class OpenAIInterpreter(CommandInterpreter):
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout

    def interpret(self, text: str) -> Interpretation:
        if not self.api_key:
            raise InterpreterError("OpenAI API key is required to interpret commands")

        url = f"{self.base_url.rstrip('/')}/chat/completions"
        payload = {
            "model": self.model,
            "response_format": {"type": "json_object"},
            "temperature": 0.0,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error("OpenAI request failed: %s", e)
            raise InterpreterError(f"Failed to reach OpenAI API: {e}") from e

        return self._parse(self._extract_content(data))

    @staticmethod
    def _extract_content(data: dict[str, Any]) -> str:
        try:
            return data["choices"][0]["message"]["content"] or "{}"
        except (KeyError, IndexError, TypeError) as e:
            raise InterpreterError("Unexpected OpenAI response shape") from e

    @staticmethod
    def _parse(content: str) -> Interpretation:
        try:
            result = json.loads(content)
        except json.JSONDecodeError as e:
            raise InterpreterError("OpenAI returned invalid JSON") from e
        if not isinstance(result, dict):
            raise InterpreterError("OpenAI returned a non-object result")

        raw_action = str(result.get("action") or "").strip().lower()
        try:
            confidence = float(result.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        target = result.get("target")

        return Interpretation(
            action=_ACTION_ALIASES.get(raw_action),
            target=str(target) if target else None,
            confidence=max(0.0, min(1.0, confidence)),
            explanation=str(result.get("explanation") or "Unable to process command"),
        )
