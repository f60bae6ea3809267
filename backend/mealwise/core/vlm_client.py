"""
VLM (Vision-Language Model) client for image understanding.
Model-agnostic interface for analyzing pantry and fridge photos.
"""
import base64
from typing import Optional

import httpx

from mealwise.core.exceptions import MalformedOutputError, ToolExecutionError
from mealwise.core.llm_client import parse_structured_output
from mealwise.core.logging import get_logger
from mealwise.core.base_client import BaseAIClient
from mealwise.db.schema import PantryAnalysis

logger = get_logger("core.vlm_client")

TOOL_NAME = "analyzePantryImage"


class VLMClient(BaseAIClient):
    """Client for interacting with Vision-Language Models."""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(timeout)
        # Used for image downloads only; tests pass a mock transport
        self.transport = transport

    async def _call_ollama_vision(self, image_bytes: bytes, prompt: str, response_format: Optional[dict] = None) -> str:
        """Call Ollama vision API using chat endpoint."""
        image_b64 = base64.b64encode(image_bytes).decode('utf-8')

        url = f"{self.settings.vlm_base_url}/api/chat"

        payload = {
            "model": self.settings.vlm_model,
            "messages": [
                {
                    "role": "user",
                    "content": prompt,
                    "images": [image_b64]
                }
            ],
            "stream": False
        }
        if response_format is not None:
            payload["format"] = response_format

        response_json = await self._make_request(url, payload, log_prefix="VLM Client")
        try:
            return response_json["message"]["content"]
        except (KeyError, TypeError) as e:
            raise MalformedOutputError(f"Unexpected VLM response shape: {e}", raw=str(response_json)[:500]) from e

    async def fetch_image(self, image_url: str) -> bytes:
        """
        Download an image for analysis.

        The body is streamed and abandoned as soon as it passes
        ``image_max_bytes``; anything that is not ``image/*`` is refused.

        Raises:
            ToolExecutionError: If the image cannot be fetched in time, is too
                large or is not an image.
        """
        timeout = self.settings.image_fetch_timeout_seconds
        max_bytes = self.settings.image_max_bytes
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self.transport) as client:
                async with client.stream("GET", image_url) as response:
                    response.raise_for_status()

                    content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
                    if not content_type.startswith("image/"):
                        logger.warning(f"[VLM Client] Refusing {image_url[:100]}: content type {content_type or 'missing'}")
                        raise ToolExecutionError(TOOL_NAME, f"URL is not an image ({content_type or 'no content type'})")

                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > max_bytes:
                        raise ToolExecutionError(TOOL_NAME, f"image is larger than {max_bytes} bytes")

                    body = bytearray()
                    async for chunk in response.aiter_bytes():
                        body.extend(chunk)
                        if len(body) > max_bytes:
                            raise ToolExecutionError(TOOL_NAME, f"image is larger than {max_bytes} bytes")
                    return bytes(body)
        except httpx.HTTPError as e:
            logger.error(f"[VLM Client] Failed to fetch image {image_url[:100]}: {e}")
            raise ToolExecutionError(TOOL_NAME, f"could not fetch image: {e}") from e

    async def analyze_pantry_image(self, image_bytes: bytes) -> PantryAnalysis:
        """
        Identify the food items visible in a pantry or fridge photo.

        Args:
            image_bytes: Image data

        Returns:
            PantryAnalysis with the detected items and a short summary
        """
        prompt = self.prompt_loader.get_prompt_template("pantry_analysis", type="vlm").format()

        response = await self._call_ollama_vision(
            image_bytes,
            prompt,
            response_format=PantryAnalysis.model_json_schema(),
        )
        analysis = parse_structured_output(response, PantryAnalysis, label="pantry_analysis")
        logger.info(f"[VLM Client] Pantry analysis found {len(analysis.items)} items")
        return analysis


# Global instance
_vlm_client: Optional[VLMClient] = None


def get_vlm_client() -> VLMClient:
    """Get or create global VLMClient instance."""
    global _vlm_client
    if _vlm_client is None:
        _vlm_client = VLMClient()
    return _vlm_client
