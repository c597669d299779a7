"""Image generation expert: refine the request, then fetch the rendered image."""

from __future__ import annotations

import random
import re
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from sage_agent.agent.tokens import Content, content_text
from sage_agent.config.schema import ImageConfig
from sage_agent.orchestration.experts.base import (
    Expert,
    ExpertAttachment,
    ExpertContext,
    ExpertName,
    ExpertPacket,
)
from sage_agent.providers.base import LLMProvider

IMAGE_REFINER_SYSTEM_PROMPT = """You are a Lead AI Art Director and Prompt Engineer.
Your task: Transform the user's request into a highly optimized image generation prompt.

Inputs:
1. User Request
2. Conversation Context (to resolve references like "it", "that", "her")
3. Reply Context (if user replied to a specific message)
4. Input Image (visual context - if present)

Instructions:
- **Dynamic Adaptation**: Match the user's goals. Do not force specific styles or quality keywords unless they fit the request.
- **Strict Intent**: Follow the user's intent 1:1. If the user asks for specific content, ensure it is in the prompt.
- **Image Handling**: If an image is provided, use it as the base reference. If no image is provided, interpret the text request to the best of your ability.
- **Output**: Output ONLY the final English prompt text. No conversational filler."""

IMAGE_READY_NOTE = (
    "[ImageGen] IMAGE GENERATED SUCCESSFULLY.\n"
    "SYSTEM INSTRUCTION: The image is ALREADY ATTACHED to this message.\n"
    "CRITICAL: Do **NOT** output any JSON. Do **NOT** verify the action.\n"
    "Your ONLY job is to assume the persona and narrate the image to the user.\n"
    'Example: "Here is your cyberpunk masterpiece."'
)

REFINER_HISTORY_LIMIT = 10
_UNSAFE_FILENAME = re.compile(r"[^a-z0-9]", re.IGNORECASE)


def first_image_url(content: Content | None) -> str | None:
    if not isinstance(content, list):
        return None
    for part in content:
        if part.get("type") == "image_url":
            url = (part.get("image_url") or {}).get("url")
            if url:
                return str(url)
    return None


def image_filename(prompt: str, seed: int) -> str:
    return f"sage_{_UNSAFE_FILENAME.sub('_', prompt[:20])}_{seed}.jpg"


class ImageGenExpert(Expert):
    """
    Two-phase image generation.

    The refiner model rewrites the request using recent history and any
    attached or replied-to image. A refiner failure falls back to the raw
    user text. The prompt is then rendered by the image endpoint and the
    bytes are attached to the packet.
    """

    name = ExpertName.IMAGE_GENERATOR
    error_text = "ImageGenerator: Error loading data."

    def __init__(
        self,
        provider: LLMProvider,
        config: ImageConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ):
        self.provider = provider
        self.config = config or ImageConfig()
        self._transport = transport
        self._rng = rng or random.Random()

    async def refine_prompt(
        self,
        user_text: str,
        history: list[dict[str, Any]],
        *,
        image_url: str | None = None,
        reply_text: str | None = None,
        api_key: str | None = None,
    ) -> str:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": IMAGE_REFINER_SYSTEM_PROMPT},
            *history[-REFINER_HISTORY_LIMIT:],
        ]
        if reply_text:
            messages.append(
                {"role": "system", "content": f'CONTEXT: The user is replying to this message: "{reply_text}"'}
            )
        if image_url:
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": f"Request: {user_text}"},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            )
        else:
            messages.append({"role": "user", "content": f"Request: {user_text}"})

        try:
            response = await self.provider.chat(
                messages=messages,
                model=self.config.refiner_model,
                temperature=0.8,
                max_tokens=1000,
                api_key=api_key,
            )
        except Exception as e:
            logger.warning(f"ImageGen refiner failed, falling back to raw prompt: {e}")
            return user_text

        refined = (response.content or "").strip()
        if not refined:
            return user_text
        logger.debug(f"ImageGen prompt refined: {user_text[:80]!r} -> {refined[:120]!r}")
        return refined

    def build_request(self, prompt: str, seed: int, image_url: str | None, api_key: str | None) -> tuple[str, dict[str, Any]]:
        url = f"{self.config.base_url.rstrip('/')}/{quote(prompt, safe='')}"
        params: dict[str, Any] = {"model": self.config.model, "nologo": "true", "seed": seed}
        if image_url:
            params["image"] = image_url
        key = api_key or self.config.api_key
        if key:
            params["key"] = key
        return url, params

    async def fetch_image(self, url: str, params: dict[str, Any]) -> bytes:
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport) as client:
            resp = await client.get(url, params=params)
            if resp.status_code >= 400:
                raise RuntimeError(f"Image API error: {resp.status_code} {resp.text[:200]}")
            return resp.content

    async def run(self, ctx: ExpertContext) -> ExpertPacket:
        if not ctx.user_text.strip():
            return ExpertPacket(name=self.name, content="ImageGenerator: Missing prompt text.", token_estimate=10)

        image_url = first_image_url(ctx.user_content) or first_image_url(ctx.reply_reference_content)
        reply_text = content_text(ctx.reply_reference_content) or None

        try:
            prompt = await self.refine_prompt(
                ctx.user_text,
                ctx.history,
                image_url=image_url,
                reply_text=reply_text,
                api_key=ctx.api_key,
            )
            seed = self._rng.randrange(1_000_000)
            url, params = self.build_request(prompt, seed, image_url, ctx.api_key)
            logger.info(f"ImageGen fetching image (attachment={bool(image_url)}, seed={seed})")
            data = await self.fetch_image(url, params)
        except Exception as e:
            logger.error(f"ImageGen failed to generate image: {e}")
            return ExpertPacket(
                name=self.name,
                content=f"[ImageGenerator] Failed to generate image: {e}",
                token_estimate=20,
            )

        return ExpertPacket(
            name=self.name,
            content=IMAGE_READY_NOTE,
            structured={
                "original_prompt": ctx.user_text,
                "refined_prompt": prompt,
                "model": self.config.model,
                "seed": seed,
                "has_attachment": image_url is not None,
            },
            binary=ExpertAttachment(data=data, filename=image_filename(prompt, seed), mimetype="image/jpeg"),
        )
