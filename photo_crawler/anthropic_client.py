from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any

import requests

from .errors import APIError, NoContentError, TransportError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class VisionTransport(ABC):
    """A remote vision-capable completion endpoint: (prompt, image) -> text."""

    @abstractmethod
    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        image_bytes: bytes,
        media_type: str,
    ) -> str:
        """Return the text completion.

        Raises:
            TransportError: network failure or non-2xx response
            NoContentError: the response carried no text block
        """


class AnthropicClient(VisionTransport):
    """Client for the Anthropic Messages API.

    One POST per call, no retries. Failures surface as ``TransportError`` so
    the pipeline can record them and try again on the next scan.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str,
        timeout: float = 120.0,
        max_tokens: int = 4096,
        session: requests.Session | None = None,
    ):
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "content-type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            }
        )

    def send_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        logger.info(f"Sending request to extraction API (model: {payload.get('model')})")
        try:
            response = self.session.post(self.base_url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise TransportError(f"Extraction API timed out after {self.timeout:.0f}s") from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Extraction API request failed: {exc}") from exc

        logger.info(f"Received response: HTTP {response.status_code}")
        if not 200 <= response.status_code < 300:
            message = ""
            try:
                body = response.json()
                message = str((body.get("error") or {}).get("message", ""))
            except ValueError:
                pass
            raise APIError(response.status_code, message)

        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"Extraction API returned a non-JSON body: {exc}") from exc

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        image_bytes: bytes,
        media_type: str,
    ) -> str:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            },
                        },
                        {"type": "text", "text": user_prompt},
                    ],
                }
            ],
        }
        text = first_text_block(self.send_message(payload))
        if text is None:
            raise NoContentError("No text content in API response")
        return text


def first_text_block(response: dict[str, Any]) -> str | None:
    for block in response.get("content") or []:
        if isinstance(block, dict) and block.get("type") == "text":
            return str(block.get("text", ""))
    return None
