"""
Robust JSON extraction utilities for LLM responses.
Models constrained by a JSON schema usually answer with bare JSON, but smaller
models still wrap it in prose or code fences, so several strategies are tried.
"""
import json
import re
from typing import Any, Callable, Dict, List, Optional

from mealwise.core.logging import get_logger

logger = get_logger("utils.json_parser")

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_PREFIXES = (
    "Here's the JSON:",
    "Here is the JSON:",
    "The result is:",
    "Result:",
    "Output:",
    "Response:",
)


def extract_json_from_llm_response(
    response: str,
    fallback: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Extract a JSON object from an LLM response.

    Tries, in order:
    1. The whole response as JSON
    2. Markdown code fences (```json ... ```)
    3. The outermost { ... } span
    4. The first balanced JSON object
    5. The text after a known chatty prefix

    Args:
        response: Raw LLM response string
        fallback: Default value if extraction fails

    Returns:
        Parsed JSON dictionary or fallback

    Raises:
        ValueError: If extraction fails and no fallback provided
    """
    if not response or not isinstance(response, str):
        if fallback is not None:
            return fallback
        raise ValueError("Empty or invalid response")

    strategies: List[Callable[[str], Optional[Dict[str, Any]]]] = [
        _parse_whole,
        _extract_fenced_json,
        _extract_outer_braces,
        _extract_first_json_object,
        _extract_after_prefix,
    ]
    for strategy in strategies:
        try:
            result = strategy(response)
        except (json.JSONDecodeError, ValueError) as e:
            logger.debug(f"[JSON Parser] {strategy.__name__} failed: {e}")
            continue
        if isinstance(result, dict):
            return result

    if fallback is not None:
        logger.warning("[JSON Parser] All extraction strategies failed, using fallback")
        return fallback

    raise ValueError(f"Could not extract JSON from response: {response[:200]}...")


def _loads_lenient(text: str) -> Any:
    """json.loads, retrying once after fixing common LLM mistakes."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(_fix_common_json_errors(text))


def _parse_whole(response: str) -> Optional[Dict[str, Any]]:
    stripped = response.strip()
    if stripped.startswith("{"):
        return _loads_lenient(stripped)
    return None


def _extract_fenced_json(response: str) -> Optional[Dict[str, Any]]:
    match = _FENCE_PATTERN.search(response)
    if not match:
        return None
    content = match.group(1).strip()
    logger.debug(f"[JSON Parser] Extracted fenced block, length: {len(content)}")
    if not content.startswith("{"):
        return None
    return _loads_lenient(content)


def _extract_outer_braces(response: str) -> Optional[Dict[str, Any]]:
    start = response.find("{")
    end = response.rfind("}") + 1
    if start >= 0 and end > start:
        return _loads_lenient(response[start:end])
    return None


def _extract_first_json_object(response: str) -> Optional[Dict[str, Any]]:
    """Find and parse the first balanced {...} object."""
    depth = 0
    start_idx = None

    for i, char in enumerate(response):
        if char == "{":
            if depth == 0:
                start_idx = i
            depth += 1
        elif char == "}" and depth:
            depth -= 1
            if depth == 0 and start_idx is not None:
                try:
                    return json.loads(response[start_idx:i + 1])
                except json.JSONDecodeError:
                    start_idx = None

    return None


def _extract_after_prefix(response: str) -> Optional[Dict[str, Any]]:
    cleaned = response
    for prefix in _PREFIXES:
        if prefix in cleaned:
            cleaned = cleaned.split(prefix, 1)[1]
    if cleaned is response:
        return None
    return _extract_outer_braces(cleaned.strip())


def _fix_common_json_errors(json_str: str) -> str:
    """
    Fix common JSON errors that LLMs make.

    - Range values like 2-3 (keeps the first number)
    - Bare fractions like 1/2
    - Trailing commas before } or ]
    """
    fixed = re.sub(r':\s*(\d+)-\d+(\s*[,}])', r': \1\2', json_str)
    fixed = re.sub(
        r':\s*(\d+)/(\d+)(\s*[,}])',
        lambda m: f': {float(m.group(1)) / float(m.group(2))}{m.group(3)}',
        fixed,
    )
    fixed = re.sub(r',(\s*[}\]])', r'\1', fixed)

    if fixed != json_str:
        logger.debug(f"[JSON Parser] Fixed JSON errors: {len(json_str)} -> {len(fixed)} chars")
    return fixed


def safe_json_parse(json_str: Optional[str], fallback: Any = None) -> Any:
    """
    Safely parse JSON string with fallback.

    Args:
        json_str: JSON string to parse
        fallback: Value to return if parsing fails

    Returns:
        Parsed JSON or fallback value
    """
    if json_str is None:
        return fallback
    try:
        return json.loads(json_str)
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.warning(f"JSON parse failed: {e}")
        return fallback
