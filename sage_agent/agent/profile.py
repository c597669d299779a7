"""Post-turn update of the compact user profile summary."""

from __future__ import annotations

import json

from loguru import logger

from sage_agent.agent.envelope import strip_code_fences
from sage_agent.providers.base import LLMProvider

PROFILE_MAX_CHARS = 800

UPDATE_SYSTEM_PROMPT = f"""You update a compact user profile summary for personalization.
Rules:
- Keep <= {PROFILE_MAX_CHARS} characters.
- Store only stable preferences and non-sensitive facts that help future replies (tone preferences, formats, recurring interests).
- Do NOT store raw chat logs or transcripts.
- Do NOT store secrets, credentials, health/sexual/political identity, or anything sensitive.
- If nothing stable is learned, return the previous summary unchanged.
Output format: JSON exactly: {{"summary":"..."}}."""


def build_update_prompt(previous_summary: str | None, user_message: str, assistant_reply: str) -> str:
    return (
        f"Current Summary: {previous_summary or 'None'}\n\n"
        "Latest Interaction:\n"
        f"User: {user_message}\n"
        f"Assistant: {assistant_reply}\n\n"
        "Update the summary based on the new interaction."
    )


class ProfileUpdater:
    """Ask the model for a refreshed profile summary after a turn."""

    def __init__(self, provider: LLMProvider, *, model: str | None = None):
        self.provider = provider
        self.model = model

    async def update(
        self,
        previous_summary: str | None,
        user_message: str,
        assistant_reply: str,
        *,
        api_key: str | None = None,
    ) -> str | None:
        """Return the new summary, or None when the model output is unusable."""
        try:
            response = await self.provider.chat(
                messages=[
                    {"role": "system", "content": UPDATE_SYSTEM_PROMPT},
                    {"role": "user", "content": build_update_prompt(previous_summary, user_message, assistant_reply)},
                ],
                model=self.model,
                max_tokens=1024,
                temperature=0.0,
                response_format="json_object",
                api_key=api_key,
            )
        except Exception as e:
            logger.warning(f"Profile update call failed: {e}")
            return None

        try:
            data = json.loads(strip_code_fences(response.content or ""))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse profile update JSON: {e}")
            return None
        summary = data.get("summary") if isinstance(data, dict) else None
        if not isinstance(summary, str):
            return None
        return summary.strip()[:PROFILE_MAX_CHARS]
