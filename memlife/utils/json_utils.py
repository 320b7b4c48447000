"""
JSON utilities for cleaning and parsing LLM responses.
"""

import json
from typing import Any, Optional

from .logging_config import get_logger

logger = get_logger(__name__)


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


def parse_json_object(response: str) -> Optional[Any]:
    """Parse an LLM response as JSON, tolerating prose around a JSON object.

    Args:
        response: Raw LLM response

    Returns:
        Parsed value, or None if nothing parseable was found
    """
    cleaned = clean_json_response(response or '')
    if not cleaned:
        return None

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Fall back to the outermost {...} block
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start == -1 or end <= start:
        logger.warning('LLM response contained no JSON object')
        return None

    try:
        return json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        logger.warning(f'Failed to parse LLM JSON response: {e}')
        return None
