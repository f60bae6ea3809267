"""
LLM client for text-based AI operations.
Model-agnostic interface for free-text chat and schema-constrained generation.
"""
from typing import Any, List, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from mealwise.core.exceptions import MalformedOutputError
from mealwise.core.logging import get_logger
from mealwise.core.base_client import BaseAIClient
from mealwise.utils.json_parser import extract_json_from_llm_response

logger = get_logger("core.llm_client")

ModelT = TypeVar("ModelT", bound=BaseModel)


class LLMClient(BaseAIClient):
    """Client for interacting with Language Models."""

    async def _call_ollama_chat(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        temperature: float = 0.7,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Call the Ollama chat endpoint and return the assistant content."""
        url = f"{self.settings.llm_base_url}/api/chat"

        chat_messages = []
        if system:
            chat_messages.append({"role": "system", "content": system})
        chat_messages.extend(
            {"role": m.get("role", "user"), "content": m.get("content", "")}
            for m in messages
        )

        payload = {
            "model": self.settings.llm_model,
            "messages": chat_messages,
            "stream": False,
            "options": {
                "temperature": temperature
            }
        }
        if response_format is not None:
            payload["format"] = response_format

        response_json = await self._make_request(url, payload, log_prefix="LLM Client")
        try:
            return response_json["message"]["content"]
        except (KeyError, TypeError) as e:
            raise MalformedOutputError(f"Unexpected LLM response shape: {e}", raw=str(response_json)[:500]) from e

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        system: Optional[str] = None
    ) -> str:
        """
        Chat-style interaction with the LLM.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature (0.0-1.0)
            system: Optional system prompt

        Returns:
            LLM response text
        """
        return await self._call_ollama_chat(messages, system=system, temperature=temperature)

    async def generate_structured(
        self,
        prompt_key: str,
        response_model: Type[ModelT],
        temperature: float = 0.3,
        **variables: Any,
    ) -> ModelT:
        """
        Render a prompt from llm_prompts.json and ask for output matching a schema.

        The pydantic model's JSON schema is sent as the Ollama ``format`` so the
        model is constrained at decode time; the answer is still re-validated.

        Args:
            prompt_key: Key in llm_prompts.json
            response_model: Pydantic model describing the expected output
            temperature: Sampling temperature
            **variables: Template variables for the prompt

        Returns:
            Validated instance of ``response_model``

        Raises:
            MalformedOutputError: If the answer is not JSON or fails validation
            ModelUnavailableError: If the endpoint cannot be reached
        """
        system_prompt, user_prompt = self.prompt_loader.render_llm_prompt(prompt_key, **variables)

        response = await self._call_ollama_chat(
            [{"role": "user", "content": user_prompt}],
            system=system_prompt,
            temperature=temperature,
            response_format=response_model.model_json_schema(),
        )
        return parse_structured_output(response, response_model, label=prompt_key)


def parse_structured_output(response: str, response_model: Type[ModelT], label: str = "llm") -> ModelT:
    """Parse raw model text into ``response_model`` or raise MalformedOutputError."""
    try:
        data = extract_json_from_llm_response(response)
    except ValueError as e:
        logger.warning(f"[LLM Client] {label}: response was not JSON")
        logger.debug(f"[LLM Client] Raw response: {response[:500] if response else response!r}")
        raise MalformedOutputError(f"{label}: response was not valid JSON", raw=response or "") from e

    try:
        return response_model.model_validate(data)
    except ValidationError as e:
        logger.warning(f"[LLM Client] {label}: output failed validation ({e.error_count()} errors)")
        raise MalformedOutputError(f"{label}: output did not match schema: {e}", raw=response) from e


# Global instance
_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Get or create global LLMClient instance."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
