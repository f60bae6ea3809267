"""
Embed structured tool output inside persisted assistant messages.

The chat UI stores only message text, so structured data rides along as an
HTML comment: <!-- UI_DATA_START:<base64 json>:UI_DATA_END -->
"""
import base64
import binascii
import json
import re
from typing import Any, Dict, Optional

from mealwise.core.logging import get_logger

logger = get_logger("utils.ui_data")

UI_DATA_PATTERN = re.compile(r"<!-- UI_DATA_START:([A-Za-z0-9+/=]+):UI_DATA_END -->")


def embed_ui_data(text: str, data: Optional[Dict[str, Any]]) -> str:
    """Append the encoded marker to ``text``; no-op for empty data."""
    if not data:
        return text
    encoded = base64.b64encode(json.dumps(data, default=str).encode("utf-8")).decode("ascii")
    return f"{text}\n\n<!-- UI_DATA_START:{encoded}:UI_DATA_END -->"


def extract_ui_data(text: str) -> Optional[Dict[str, Any]]:
    """Decode the last marker in ``text``, or None if there is none or it is corrupt."""
    matches = UI_DATA_PATTERN.findall(text or "")
    if not matches:
        return None
    try:
        data = json.loads(base64.b64decode(matches[-1]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"[UI Data] Could not decode marker: {e}")
        return None
    return data if isinstance(data, dict) else None


def strip_ui_data(text: str) -> str:
    """Remove markers before showing text to a model."""
    return UI_DATA_PATTERN.sub("", text or "").rstrip()
