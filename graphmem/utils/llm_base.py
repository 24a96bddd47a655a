"""
Provider-neutral interface for the reasoning oracle.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ToolCall:
    """A single structured tool invocation returned by the model."""
    name: str
    arguments: str  # JSON-encoded arguments

    def parsed_arguments(self) -> Dict[str, Any]:
        """Decode the arguments string.

        Raises:
            ValueError: If the arguments are not a JSON object
        """
        data = json.loads(self.arguments) if self.arguments else {}
        if not isinstance(data, dict):
            raise ValueError(f'Tool {self.name} returned non-object arguments')
        return data


@dataclass
class LLMResponse:
    """Either plain text or zero or more tool calls."""
    text: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def calls_named(self, name: str) -> List[ToolCall]:
        return [call for call in self.tool_calls if call.name == name]


class LLMBase(ABC):
    """Single-method capability: messages plus an optional schema in, text or tool calls out."""

    @abstractmethod
    def generate_response(self,
                          messages: List[Dict[str, str]],
                          response_format: Optional[Dict[str, Any]] = None,
                          tools: Optional[List[Dict[str, Any]]] = None) -> LLMResponse:
        """
        Generate a response for the conversation.

        Args:
            messages: Role-tagged messages, each {'role': 'system'|'user'|'assistant', 'content': str}
            response_format: {'type': 'json_object'} to request a JSON text answer
            tools: Declared tools, each {'name', 'description', 'parameters'}

        Returns:
            LLMResponse with text or tool calls
        """
        raise NotImplementedError
