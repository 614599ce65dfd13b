from __future__ import annotations

import json
from typing import Any

from ..errors import PreferenceParseError
from ..json_utils import clean_json_response
from ..logging_config import get_logger
from ..tools.registry import CapabilityRegistry
from .llm import ChatCompletionClient, ChatMessage, first_choice_message

logger = get_logger(__name__)


PREFERENCE_PROMPT = "user_preference_extract_prompt"
UPDATE_USER_PREFERENCE = "update_user_preference"


def rendered_text(rendered: dict[str, Any]) -> str | None:
    """Text of the first message of a rendered prompt template."""
    messages = rendered.get("messages") or []
    if not messages or not isinstance(messages[0], dict):
        return None
    content = messages[0].get("content")
    if isinstance(content, dict):
        text = content.get("text")
    else:
        text = content
    return text if isinstance(text, str) and text.strip() else None


class PreferenceExtractor:
    """Derive a user-preference object from the latest user message.

    Needs the preference prompt template and the update capability; when
    either is missing the extraction is skipped.
    """

    def __init__(self, *, llm: ChatCompletionClient, registry: CapabilityRegistry):
        self.llm = llm
        self.registry = registry

    async def run(self, user_message: str) -> dict[str, Any] | None:
        template = self.registry.prompt(PREFERENCE_PROMPT)
        update = self.registry.tool(UPDATE_USER_PREFERENCE)
        if template is None or update is None:
            logger.info(
                f"Skipping preference extraction: "
                f"{PREFERENCE_PROMPT if template is None else UPDATE_USER_PREFERENCE} not available"
            )
            return None

        rendered = await template.execute({"message": user_message})
        prompt = rendered_text(rendered)
        if prompt is None:
            raise PreferenceParseError("Preference prompt template rendered no text")

        data = await self.llm.complete([ChatMessage(role="user", content=prompt)])
        content = first_choice_message(data).get("content")
        if not isinstance(content, str):
            raise PreferenceParseError("Preference reply has no text content")

        try:
            preferences = json.loads(clean_json_response(content))
        except json.JSONDecodeError as e:
            raise PreferenceParseError(f"Preference reply is not JSON: {e}") from e
        if not isinstance(preferences, dict):
            raise PreferenceParseError(f"Preference reply must be a JSON object, got {type(preferences).__name__}")

        await update.execute({"preferences": preferences})
        logger.debug(f"Updated user preferences: {sorted(preferences)}")
        return preferences
