"""
JSON utilities for cleaning LLM responses.
"""

import json
from typing import Any, Dict, Optional


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def load_json_object(response: Optional[str]) -> Dict[str, Any]:
    """Parse an LLM response that is expected to hold a single JSON object.

    Args:
        response: Raw LLM response, possibly wrapped in code block markers

    Returns:
        Parsed object

    Raises:
        ValueError: If the response is empty or not a JSON object
    """
    if not response or not response.strip():
        raise ValueError('Empty response')

    data = json.loads(clean_json_response(response))
    if not isinstance(data, dict):
        raise ValueError(f'Expected JSON object, got {type(data).__name__}')
    return data
