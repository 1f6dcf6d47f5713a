import base64
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import requests

from .config import Settings
from .errors import ConfigurationError, MalformedResponseError, TransientRemoteError
from .models import TokenUsage

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_ESCAPE_RE = re.compile(r'\\(["\\/bfnrt]|u[0-9a-fA-F]{4})|\\')
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass
class ImagePayload:
    data: bytes
    mime_type: str = "image/jpeg"

    @classmethod
    def from_path(cls, path: str) -> "ImagePayload":
        ext = Path(path).suffix.lower()
        mime = "image/png" if ext == ".png" else "image/jpeg"
        with open(path, "rb") as f:
            return cls(data=f.read(), mime_type=mime)

    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class LLMReply:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


class LLMBackend(Protocol):
    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        image: Optional[ImagePayload] = None,
        json_mode: bool = False,
        seed: Optional[int] = None,
        max_tokens: int = 4000,
    ) -> LLMReply:
        ...


def _fix_escape(m: "re.Match[str]") -> str:
    if m.group(1):
        return m.group(0)
    return "\\\\"


def sanitize_json_text(content: str) -> str:
    """Strip code fences, BOM and stray backslashes that break json.loads."""
    cleaned = (content or "").strip().lstrip("\ufeff")
    cleaned = _FENCE_RE.sub("", cleaned).replace("```", "")
    cleaned = _ESCAPE_RE.sub(_fix_escape, cleaned)
    return cleaned.strip()


def parse_json_object(content: str) -> Dict[str, Any]:
    cleaned = sanitize_json_text(content)
    if not cleaned:
        raise MalformedResponseError("empty response")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        # try to extract JSON block heuristically
        m = _OBJECT_RE.search(cleaned)
        if not m:
            raise MalformedResponseError("response is not JSON")
        try:
            parsed = json.loads(m.group(0))
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"response is not JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError("response JSON is not an object")
    return parsed


# ----------------- OpenAI path (default) -----------------

class OpenAIBackend:
    def __init__(self, model: str = "gpt-4o", timeout: int = 120, client: Any = None) -> None:
        self.model = model
        if client is None:
            from openai import OpenAI, OpenAIError
            try:
                client = OpenAI(timeout=timeout)
            except OpenAIError as exc:
                raise ConfigurationError(f"OpenAI client not configured: {exc}") from exc
        self.client = client

    def generate(self, prompt, *, system=None, image=None, json_mode=False, seed=None, max_tokens=4000) -> LLMReply:
        from openai import OpenAIError

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        if image is not None:
            messages.append({
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {
                        "url": f"data:{image.mime_type};base64,{image.b64()}",
                        "detail": "high",
                    }},
                    {"type": "text", "text": prompt},
                ],
            })
        else:
            messages.append({"role": "user", "content": prompt})

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": 0,
            "max_tokens": max_tokens,
        }
        if seed is not None:
            kwargs["seed"] = seed
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            resp = self.client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            raise TransientRemoteError(f"OpenAI request failed: {exc}") from exc

        usage = TokenUsage()
        if getattr(resp, "usage", None) is not None:
            usage = TokenUsage(input=resp.usage.prompt_tokens or 0, output=resp.usage.completion_tokens or 0)
        out = (resp.choices[0].message.content or "").strip() if resp.choices else ""
        if not out:
            raise MalformedResponseError("empty response from OpenAI")
        return LLMReply(text=out, usage=usage)


# ----------------- Ollama path (local) -----------------

class OllamaBackend:
    def __init__(self, model: str, base_url: str = "http://localhost:11434", timeout: int = 120,
                 session: Optional[requests.Session] = None) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def generate(self, prompt, *, system=None, image=None, json_mode=False, seed=None, max_tokens=4000) -> LLMReply:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": 0,
                "num_predict": max_tokens,
                "num_ctx": 8192,
            },
        }
        if seed is not None:
            payload["options"]["seed"] = seed
        if system:
            payload["system"] = system
        if image is not None:
            payload["images"] = [image.b64()]
        if json_mode:
            payload["format"] = "json"
        try:
            r = self.session.post(f"{self.base_url}/api/generate", json=payload, timeout=self.timeout)
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as exc:
            raise TransientRemoteError(f"Ollama request failed: {exc}") from exc

        out = (body.get("response") or "").strip()
        if not out:
            raise MalformedResponseError("empty response from Ollama")
        usage = TokenUsage(input=int(body.get("prompt_eval_count") or 0), output=int(body.get("eval_count") or 0))
        return LLMReply(text=out, usage=usage)


def build_llm(settings: Settings) -> LLMBackend:
    if settings.llm_provider == "ollama":
        return OllamaBackend(settings.ollama_model, settings.ollama_url, settings.ollama_timeout)
    if settings.llm_provider == "openai":
        return OpenAIBackend(settings.openai_model, settings.openai_timeout)
    raise ConfigurationError(f"Unknown LLM_PROVIDER {settings.llm_provider!r}")
