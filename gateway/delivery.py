from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Sequence

import httpx

from gateway.markup import MARKDOWN_V2_PARSE_MODE, escape_markdown

TELEGRAM_API_BASE_URL = "https://api.telegram.org"
SEND_MESSAGE_METHOD = "sendMessage"
SEND_DOCUMENT_METHOD = "sendDocument"
DEFAULT_TIMEOUT_S = 10.0


@dataclass(frozen=True)
class DeliveryOutcome:
    recipient: str
    status_code: int | None = None
    error: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code == httpx.codes.OK


def compose_caption(topic: str, sender: str, text: str) -> str:
    # Only the sender is escaped; topic names come from trusted config and
    # text is forwarded as the caller wrote it.
    return f"From: *{escape_markdown(sender)}@{topic}*\n\n{text}"


class TelegramClient:
    def __init__(
        self,
        secret: str,
        base_url: str = TELEGRAM_API_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.logger = logging.getLogger("notify-gateway.telegram")
        self.http = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/bot{secret}",
            timeout=timeout_s,
            transport=transport,
            headers={"User-Agent": "notify-gateway"},
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _post(self, recipient: str, method: str, **kwargs: Any) -> DeliveryOutcome:
        try:
            response = await self.http.post(method, **kwargs)
        except httpx.TimeoutException as exc:
            self.logger.warning(
                "delivery timed out",
                extra={"recipient": recipient, "method": method, "error": type(exc).__name__},
            )
            return DeliveryOutcome(recipient=recipient, error="timeout", timed_out=True)
        except httpx.HTTPError as exc:
            # str(exc) can carry the request URL, which embeds the secret.
            self.logger.warning(
                "delivery transport error",
                extra={"recipient": recipient, "method": method, "error": type(exc).__name__},
            )
            return DeliveryOutcome(recipient=recipient, error=type(exc).__name__)

        outcome = DeliveryOutcome(recipient=recipient, status_code=response.status_code)
        if not outcome.ok:
            self.logger.warning(
                "delivery rejected by upstream",
                extra={"recipient": recipient, "method": method, "status": response.status_code},
            )
        return outcome

    async def send_text(self, recipient: str, topic: str, sender: str, text: str) -> DeliveryOutcome:
        payload = {
            "chat_id": recipient,
            "parse_mode": MARKDOWN_V2_PARSE_MODE,
            "text": compose_caption(topic, sender, text),
        }
        return await self._post(recipient, SEND_MESSAGE_METHOD, json=payload)

    async def send_document(
        self,
        recipient: str,
        topic: str,
        sender: str,
        caption: str,
        filename: str,
        content: bytes,
    ) -> DeliveryOutcome:
        data = {
            "chat_id": recipient,
            "caption": compose_caption(topic, sender, caption),
            "parse_mode": MARKDOWN_V2_PARSE_MODE,
        }
        files = {"document": (filename, content)}
        return await self._post(recipient, SEND_DOCUMENT_METHOD, data=data, files=files)

    async def _gather(self, recipients: Sequence[str], sends: list) -> list[DeliveryOutcome]:
        results = await asyncio.gather(*sends, return_exceptions=True)
        outcomes: list[DeliveryOutcome] = []
        for recipient, result in zip(recipients, results):
            if isinstance(result, BaseException):
                self.logger.error(
                    "delivery crashed",
                    extra={"recipient": recipient, "error": repr(result)},
                )
                outcomes.append(DeliveryOutcome(recipient=recipient, error=type(result).__name__))
            else:
                outcomes.append(result)
        return outcomes

    async def fan_out(
        self, recipients: Sequence[str], topic: str, sender: str, text: str
    ) -> list[DeliveryOutcome]:
        sends = [self.send_text(recipient, topic, sender, text) for recipient in recipients]
        return await self._gather(recipients, sends)

    async def fan_out_document(
        self,
        recipients: Sequence[str],
        topic: str,
        sender: str,
        caption: str,
        filename: str,
        content: bytes,
    ) -> list[DeliveryOutcome]:
        sends = [
            self.send_document(recipient, topic, sender, caption, filename, content)
            for recipient in recipients
        ]
        return await self._gather(recipients, sends)
