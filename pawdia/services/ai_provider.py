"""Image model provider: text-to-image and image-to-image over an OpenAI/Gemini-style HTTP API."""

import re
import time
from typing import Any

import httpx
from pydantic import BaseModel, Field

from pawdia.core.config import get_settings
from pawdia.core.exceptions import UpstreamError
from pawdia.core.logging import get_logger

log = get_logger(__name__)

PROVIDER = "ai"
DEFAULT_IMAGE_STRENGTH = 0.15
_URL_RE = re.compile(r"https?://[^\s'\"]+")


class GenerationInput(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    negative_prompt: str | None = None
    width: int = Field(default=512, ge=64, le=2048)
    height: int = Field(default=512, ge=64, le=2048)
    steps: int | None = None
    cfg_scale: float | None = None
    seed: int | None = None
    image_base64: str | None = None
    image_mime_type: str = "image/jpeg"
    image_strength: float = Field(default=DEFAULT_IMAGE_STRENGTH, ge=0.0, le=1.0)

    @property
    def mode(self) -> str:
        return "image_to_image" if self.image_base64 else "text_to_image"


def text_to_image_payload(inp: GenerationInput, model: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "prompt": inp.prompt,
        "width": inp.width,
        "height": inp.height,
    }
    if inp.steps is not None:
        payload["steps"] = inp.steps
    if inp.cfg_scale is not None:
        payload["cfgScale"] = inp.cfg_scale
    if inp.negative_prompt:
        payload["negative_prompt"] = inp.negative_prompt
    return payload


def image_to_image_payload(inp: GenerationInput, model: str) -> dict[str, Any]:
    config: dict[str, Any] = {"temperature": 0.2, "topP": 0.8, "topK": 40}
    if inp.seed is not None:
        config["seed"] = inp.seed
    if inp.cfg_scale is not None:
        config["cfgScale"] = inp.cfg_scale
    return {
        "model": model,
        "contents": [
            {
                "parts": [
                    {"text": inp.prompt},
                    {"inline_data": {"mime_type": inp.image_mime_type, "data": inp.image_base64}},
                ]
            }
        ],
        "generationConfig": config,
        "image_strength": inp.image_strength,
    }


def parse_image_response(data: dict[str, Any]) -> dict[str, Any] | None:
    """Normalise provider output to {"base64": ...} or {"image_url": ...} plus "created"; None if no image."""
    created = data.get("created") or int(time.time())
    candidates = data.get("candidates") or []
    if candidates:
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return {"base64": inline["data"], "created": created}
            text = part.get("text")
            if isinstance(text, str):
                m = _URL_RE.search(text)
                if m:
                    return {"image_url": m.group(0), "created": created}
    items = data.get("data") or []
    if items:
        first = items[0] or {}
        if first.get("b64_json"):
            return {"base64": first["b64_json"], "created": created}
        if first.get("url"):
            return {"image_url": first["url"], "created": created}
    return None


async def generate_image(inp: GenerationInput) -> dict[str, Any]:
    """Call the provider; raises UpstreamError on transport errors, non-2xx or output without an image."""
    settings = get_settings()
    if not settings.ai_api_key:
        raise UpstreamError("AI service not configured on server", provider=PROVIDER)
    base = settings.ai_api_base_url.rstrip("/")
    if inp.image_base64:
        url = f"{base}/models/{settings.ai_model}:generateContent"
        payload = image_to_image_payload(inp, settings.ai_model)
    else:
        url = f"{base}/images/generations"
        payload = text_to_image_payload(inp, settings.ai_model)
    headers = {"Authorization": f"Bearer {settings.ai_api_key}"}
    try:
        async with httpx.AsyncClient(timeout=settings.ai_timeout_seconds) as client:
            resp = await client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as e:
        log.warning("ai_provider_transport_error", mode=inp.mode, error=str(e))
        raise UpstreamError("AI provider unreachable", provider=PROVIDER) from e
    if resp.status_code >= 400:
        log.warning("ai_provider_error", mode=inp.mode, status_code=resp.status_code, body=resp.text[:500])
        raise UpstreamError(
            "AI provider returned an error",
            provider=PROVIDER,
            details={"status_code": resp.status_code},
        )
    try:
        data = resp.json()
    except ValueError as e:
        raise UpstreamError("AI provider returned invalid JSON", provider=PROVIDER) from e
    result = parse_image_response(data if isinstance(data, dict) else {})
    if result is None:
        log.warning("ai_provider_no_image", mode=inp.mode)
        raise UpstreamError("AI provider returned no image", provider=PROVIDER)
    return result
