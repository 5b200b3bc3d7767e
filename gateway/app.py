from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.requests import ClientDisconnect

from gateway.config import AppConfig, load_config
from gateway.delivery import DeliveryOutcome, TelegramClient
from gateway.ingest import IngestError, ingest_multipart
from gateway.topics import ClientAddressError, extract_client_address, is_authorized

TEXT_PLAIN = "text/plain"
MULTIPART_FORM_DATA = "multipart/form-data"


class PayloadTooLarge(Exception):
    pass


def media_type_of(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


async def limited_stream(request: Request, max_bytes: int) -> AsyncIterator[bytes]:
    declared = request.headers.get("content-length", "").strip()
    if declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLarge()

    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > max_bytes:
            raise PayloadTooLarge()
        yield chunk


async def read_text_body(request: Request, max_bytes: int) -> str:
    body = b"".join([chunk async for chunk in limited_stream(request, max_bytes)])
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise IngestError("Message is not valid UTF-8") from exc


def aggregate_response(outcomes: Sequence[DeliveryOutcome], distinct_timeout_status: bool) -> Response:
    failed = [outcome for outcome in outcomes if not outcome.ok]
    if not failed:
        return Response(status_code=204)
    if distinct_timeout_status and all(outcome.timed_out for outcome in failed):
        return JSONResponse(status_code=504, content={"error": "delivery timed out"})
    return JSONResponse(status_code=500, content={"error": "delivery failed"})


class AppState:
    def __init__(self, config: AppConfig, client: TelegramClient) -> None:
        self.config = config
        self.client = client
        self.inflight: set[asyncio.Task] = set()

    async def deliver(self, sends: Awaitable[list[DeliveryOutcome]]) -> list[DeliveryOutcome]:
        # Shielded so a dropped request does not cancel issued deliveries.
        task = asyncio.ensure_future(sends)
        self.inflight.add(task)
        task.add_done_callback(self.inflight.discard)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        if self.inflight:
            await asyncio.gather(*self.inflight, return_exceptions=True)


def create_app(config: AppConfig | None = None, client: TelegramClient | None = None) -> FastAPI:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger = logging.getLogger("notify-gateway")

    config = config or load_config(None, os.environ)
    client = client or TelegramClient(
        config.secret,
        base_url=config.api_base_url,
        timeout_s=config.delivery_timeout_s,
    )
    state = AppState(config, client)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "notify-gateway started",
            extra={"port": config.port, "topicCount": len(config.topics)},
        )
        yield
        await state.drain()
        await client.aclose()

    app = FastAPI(title="notify-gateway", version="3.0.0", lifespan=lifespan)
    app.state.gateway = state

    def no_such_topic() -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "No such topic"})

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(
            status_code=200,
            content={
                "ok": True,
                "service": "notify-gateway",
                "topics": len(config.topics),
            },
        )

    @app.post("/{topic_name}/{sender}")
    async def post_message(topic_name: str, sender: str, request: Request) -> Response:
        peer_host = request.client.host if request.client else None
        try:
            address = extract_client_address(request.headers, peer_host)
        except ClientAddressError as exc:
            logger.error("cannot determine client address", extra={"peer": peer_host, "error": str(exc)})
            return JSONResponse(status_code=500, content={"error": str(exc)})

        topic = config.topics.resolve(topic_name)
        if topic is None:
            logger.info("unknown topic", extra={"topic": topic_name, "address": str(address)})
            return no_such_topic()

        if not is_authorized(topic, address):
            logger.warning("address not allowed for topic", extra={"topic": topic_name, "address": str(address)})
            if config.reveal_forbidden:
                return JSONResponse(status_code=403, content={"error": "Forbidden"})
            return no_such_topic()

        content_type = request.headers.get("content-type")
        media_type = media_type_of(content_type)
        try:
            if media_type == MULTIPART_FORM_DATA:
                payload = await ingest_multipart(content_type, limited_stream(request, config.max_body_bytes))
                sends = client.fan_out_document(
                    topic.recipients,
                    topic.name,
                    sender,
                    payload.message,
                    payload.filename,
                    payload.content,
                )
            elif media_type == TEXT_PLAIN:
                text = await read_text_body(request, config.max_body_bytes)
                sends = client.fan_out(topic.recipients, topic.name, sender, text)
            else:
                return JSONResponse(status_code=415, content={"error": f"Unsupported content type {media_type or '-'}"})
        except PayloadTooLarge:
            return JSONResponse(status_code=413, content={"error": "Payload too large"})
        except IngestError as exc:
            logger.info("rejected request body", extra={"topic": topic_name, "error": str(exc)})
            return JSONResponse(status_code=400, content={"error": str(exc)})
        except ClientDisconnect:
            logger.info("client disconnected before body was read", extra={"topic": topic_name})
            return JSONResponse(status_code=400, content={"error": "Client disconnected"})

        outcomes = await state.deliver(sends)
        response = aggregate_response(outcomes, config.distinct_timeout_status)
        if response.status_code != 204:
            logger.error(
                "delivery failed",
                extra={
                    "topic": topic_name,
                    "failed": sum(1 for outcome in outcomes if not outcome.ok),
                    "total": len(outcomes),
                },
            )
        else:
            logger.info("message delivered", extra={"topic": topic_name, "recipients": len(outcomes)})
        return response

    @app.exception_handler(Exception)
    async def on_error(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("request failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Internal error"})

    return app
