"""
Prompt loader utility for managing LLM/VLM prompts from JSON files.
Centralized prompt management for easier maintenance and updates.
"""
import json
from pathlib import Path
from typing import Dict, Any, Optional, Tuple, Union, List
from langchain_core.prompts import PromptTemplate

from mealwise.core.logging import get_logger

logger = get_logger("utils.prompt_loader")


def _join(value: Union[str, List[str], None]) -> str:
    """Prompts may be stored as a list of lines for readability."""
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(value)
    return value


class PromptLoader:
    """Loads and manages prompts from JSON files."""

    def __init__(self, prompts_dir: Optional[Path] = None):
        """Initialize the prompt loader."""
        self.prompts_dir = prompts_dir or Path(__file__).parent.parent / "prompts"
        self._cache: Dict[str, Dict[str, Any]] = {}

    def _load_prompt_file(self, filename: str) -> Dict[str, Any]:
        """
        Load a prompt JSON file.

        Args:
            filename: Name of the JSON file (without .json extension)

        Returns:
            Dictionary containing prompts
        """
        if filename in self._cache:
            return self._cache[filename]

        filepath = self.prompts_dir / f"{filename}.json"

        if not filepath.exists():
            logger.error(f"Prompt file not found: {filepath}")
            return {}

        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                prompts = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading prompt file {filepath}: {e}")
            return {}

        self._cache[filename] = prompts
        return prompts

    def get_llm_prompt(self, prompt_key: str) -> Dict[str, Any]:
        """
        Get an LLM prompt by key.

        Args:
            prompt_key: Key identifying the prompt (e.g., "intent_classification")

        Returns:
            Dictionary with prompt templates
        """
        prompts = self._load_prompt_file("llm_prompts")
        return prompts.get(prompt_key, {})

    def get_vlm_prompt(self, prompt_key: str) -> Dict[str, Any]:
        """
        Get a VLM prompt by key.

        Args:
            prompt_key: Key identifying the prompt (e.g., "pantry_analysis")

        Returns:
            Dictionary with prompt templates
        """
        prompts = self._load_prompt_file("vlm_prompts")
        return prompts.get(prompt_key, {})

    def format_prompt(self, template: Union[str, List[str]], **kwargs: Any) -> str:
        """
        Render a template with LangChain's f-string PromptTemplate.

        Literal braces in templates must be doubled ({{ and }}).
        """
        text = _join(template)
        if not text:
            return ""
        prompt = PromptTemplate.from_template(text)
        return prompt.format(**{k: v for k, v in kwargs.items() if k in prompt.input_variables})

    def render_llm_prompt(self, prompt_key: str, **kwargs: Any) -> Tuple[str, str]:
        """
        Render a "system" + "user_template" LLM prompt.

        Returns:
            Tuple of (system_prompt, user_prompt)

        Raises:
            KeyError: If the prompt key is not defined
        """
        config = self.get_llm_prompt(prompt_key)
        if not config:
            raise KeyError(f"Prompt key '{prompt_key}' not found in llm prompts")

        system_prompt = self.format_prompt(config.get("system", ""), **kwargs)
        user_prompt = self.format_prompt(config.get("user_template", ""), **kwargs)
        return system_prompt, user_prompt

    def get_prompt_template(self, prompt_key: str, type: str = "llm") -> PromptTemplate:
        """
        Get a LangChain PromptTemplate object for the given key.

        Args:
            prompt_key: Key identifying the prompt
            type: Type of prompt file to look in ("llm", "vlm")

        Returns:
            LangChain PromptTemplate object
        """
        config = self.get_vlm_prompt(prompt_key) if type == "vlm" else self.get_llm_prompt(prompt_key)

        if not config:
            logger.warning(f"Prompt key '{prompt_key}' not found in {type} prompts")
            return PromptTemplate.from_template("")

        if "template" in config:
            return PromptTemplate.from_template(_join(config["template"]))

        return PromptTemplate.from_template(
            f"{_join(config.get('system'))}\n\n{_join(config.get('user_template'))}"
        )


# Global instance
_prompt_loader: Optional[PromptLoader] = None


def get_prompt_loader() -> PromptLoader:
    """Get or create global PromptLoader instance."""
    global _prompt_loader
    if _prompt_loader is None:
        _prompt_loader = PromptLoader()
    return _prompt_loader
