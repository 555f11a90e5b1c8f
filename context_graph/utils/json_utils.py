"""
JSON utilities for reading structured LLM responses.
"""

import json
from typing import Any, Dict


def clean_json_response(response: str) -> str:
    """Strip code fences and any prose around the outermost JSON object.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]
    if response.endswith('```'):
        response = response[:-3]

    start, end = response.find('{'), response.rfind('}')
    if start != -1 and end > start:
        response = response[start:end + 1]
    return response.strip()


def parse_json_object(response: str) -> Dict[str, Any]:
    """Parse an LLM response that must contain a single JSON object.

    Raises:
        ValueError: If the response holds no JSON object
    """
    data = json.loads(clean_json_response(response))
    if not isinstance(data, dict):
        raise ValueError(f'Expected a JSON object, got {type(data).__name__}')
    return data
