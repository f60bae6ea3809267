"""Free-text replies for conversational turns."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Sequence

from mealwise.core.exceptions import ModelUnavailableError
from mealwise.core.llm_client import LLMClient
from mealwise.core.logging import get_logger
from mealwise.services.orchestration.intent import format_history
from mealwise.services.orchestration.tools import describe_preferences
from mealwise.services.orchestration.types import ConversationTurn, SessionContext

logger = get_logger("services.orchestration.reply")


class ConversationalResponder:
    """Answers cooking and nutrition questions with the kitchen assistant prompt."""

    def __init__(self, llm: LLMClient, history_window: int = 5, timeout: float = 60.0):
        self.llm = llm
        self.history_window = history_window
        self.timeout = timeout

    async def respond(
        self,
        message: str,
        history: Sequence[ConversationTurn],
        context: SessionContext,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Raises:
            ModelUnavailableError: If the model cannot be reached in time
        """
        system_prompt, user_prompt = self.llm.prompt_loader.render_llm_prompt(
            "kitchen_assistant",
            preferences=describe_preferences(preferences),
            context_summary=f"Session: {context.summary()}",
            history=format_history(history, self.history_window),
            user_message=message,
        )
        try:
            reply = await asyncio.wait_for(
                self.llm.chat(
                    messages=[{"role": "user", "content": user_prompt}],
                    temperature=0.7,
                    system=system_prompt,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"[Reply] Timed out after {self.timeout}s")
            raise ModelUnavailableError("conversational reply timed out") from e

        logger.info(f"[Reply] Generated {len(reply)} chars")
        return reply.strip()
