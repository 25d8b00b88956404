"""Base interface for text command interpreters."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from guardlink.commands.models import CommandAction


@dataclass
class Interpretation:
    """Structured reading of a free-text command."""

    action: CommandAction | None  # None when the text maps to no supported action
    target: str | None  # device id, device name or family member name
    confidence: float  # 0..1
    explanation: str = ""


class CommandInterpreter(ABC):
    """Turns parent-typed or spoken text into a structured command."""

    @abstractmethod
    def interpret(self, text: str) -> Interpretation:
        """Interpret ``text``. Raises InterpreterError if the backend fails."""
