# services/extraction/service.py
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import requests

from services.extraction.errors import ServiceUnreachable

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_TIMEOUT_S = 30.0
TEMPERATURE = 0.0


class VisionService(Protocol):
    def generate(
        self,
        image_bytes: bytes,
        mime_type: str,
        instruction: str,
        json_schema: Optional[Dict[str, Any]] = None,
    ) -> str: ...


@dataclass(frozen=True)
class GeminiConfig:
    api_key: str
    base_url: str = DEFAULT_GEMINI_BASE_URL
    model: str = DEFAULT_GEMINI_MODEL
    timeout_s: float = DEFAULT_TIMEOUT_S


class GeminiVisionService:
    """
    Thin REST wrapper around Gemini generateContent.
    Contract:
      - Input: one image part + one instruction, optional response schema
      - Output: the model's text (JSON text when a schema is given)
      - Raises ServiceUnreachable on any transport, auth or shape error
    """

    def __init__(self, config: GeminiConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def generate(
        self,
        image_bytes: bytes,
        mime_type: str,
        instruction: str,
        json_schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        generation_config: Dict[str, Any] = {"temperature": TEMPERATURE}
        if json_schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = json_schema

        payload = {
            "contents": [
                {
                    "parts": [
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                        {"text": instruction},
                    ]
                }
            ],
            "generationConfig": generation_config,
        }
        resp = self._post_json(self._build_url(), payload)

        text = _collect_text(resp)
        if text is None:
            raise ServiceUnreachable("Gemini response did not contain text content.")
        return text

    def _build_url(self) -> str:
        base = (self.config.base_url or "").strip()
        if not base:
            raise ServiceUnreachable("Missing Gemini base_url")
        return f"{base.rstrip('/')}/models/{self.config.model}:generateContent"

    def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key,
        }
        try:
            r = self.session.post(url, json=payload, headers=headers, timeout=self.config.timeout_s)
        except requests.exceptions.RequestException as e:
            raise ServiceUnreachable(f"Gemini request failed: {e}") from e

        if r.status_code >= 400:
            raise ServiceUnreachable(f"Gemini request failed with HTTP {r.status_code}: {_error_excerpt(r)}")

        try:
            parsed = r.json()
        except ValueError as e:
            raise ServiceUnreachable(f"Gemini HTTP {r.status_code} but body was not JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise ServiceUnreachable("Gemini HTTP 200 but JSON was not an object")

        err = parsed.get("error")
        if err:
            raise ServiceUnreachable(f"Gemini error: {err}")

        return parsed


def _collect_text(payload: Dict[str, Any]) -> Optional[str]:
    candidates = payload.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return None

    parts = (candidates[0].get("content") or {}).get("parts") or []
    extracted: List[str] = []
    for part in parts:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            extracted.append(text.strip())
    return "\n".join(extracted) if extracted else None


def _error_excerpt(r: requests.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return (r.text or "")[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        msg = body["error"].get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return str(body)[:200]
