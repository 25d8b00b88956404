"""Rule-based interpreter for development and offline use.

Recognizes phrases like "lock Emma's phone", "unlock tablet-2",
"where is Max" and "emergency lockdown".
"""

import logging
import re

from guardlink.commands.models import CommandAction
from guardlink.interpreter.base import CommandInterpreter, Interpretation

logger = logging.getLogger(__name__)

# Checked in order; the first matching pattern wins.
_PATTERNS: list[tuple[re.Pattern[str], CommandAction, float]] = [
    (re.compile(r"\b(release|end|cancel|stop)\b.*\b(emergency|lockdown)\b"),
     CommandAction.emergency_release, 0.9),
    (re.compile(r"\b(emergency|lockdown|lock everything|lock all)\b"),
     CommandAction.emergency_lockdown, 0.9),
    (re.compile(r"\bunlock\b"), CommandAction.unlock, 0.85),
    (re.compile(r"\block\b"), CommandAction.lock, 0.85),
    (re.compile(r"\b(locate|find|where is|where's)\b"), CommandAction.locate, 0.8),
]

_TARGET = re.compile(
    r"\b(?:unlock|lock|locate|find|where is|where's)\s+(?:the\s+)?(?P<target>[\w.-]+?)(?:'s)?"
    r"(?:\s+(?:phone|tablet|device|laptop|computer))?\s*[.!?]?$"
)


class KeywordInterpreter(CommandInterpreter):
    def interpret(self, text: str) -> Interpretation:
        cleaned = " ".join(text.lower().split())
        for pattern, action, confidence in _PATTERNS:
            if not pattern.search(cleaned):
                continue
            if action.is_family_wide:
                return Interpretation(
                    action=action,
                    target=None,
                    confidence=confidence,
                    explanation=f"{action} for every family device",
                )
            match = _TARGET.search(cleaned)
            if match is None:
                # Action is clear but nobody was named
                return Interpretation(
                    action=action,
                    target=None,
                    confidence=confidence / 2,
                    explanation=f"{action} requested without a target",
                )
            target = match.group("target")
            return Interpretation(
                action=action,
                target=target,
                confidence=confidence,
                explanation=f"{action} {target}",
            )

        logger.debug("No command recognized in %r", text)
        return Interpretation(
            action=None, target=None, confidence=0.0, explanation="Unable to process command"
        )
