from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, Union

from python_multipart.exceptions import FormParserError
from python_multipart.multipart import MultipartParser, parse_options_header

MESSAGE_FIELD = "message"
FILE_FIELD = "file"
RECOGNIZED_FIELDS = frozenset({MESSAGE_FIELD, FILE_FIELD})

logger = logging.getLogger("notify-gateway.ingest")


class IngestError(ValueError):
    pass


class UnexpectedFieldError(IngestError):
    def __init__(self, name: str) -> None:
        super().__init__(f'Unexpected multipart field "{name}"')
        self.name = name


class InvalidMessageError(IngestError):
    def __init__(self) -> None:
        super().__init__("Message is not valid UTF-8")


class MissingFilenameError(IngestError):
    def __init__(self) -> None:
        super().__init__("Multipart filename missing")


class NoFileError(IngestError):
    def __init__(self) -> None:
        super().__init__("Multipart no file provided")


class MalformedBodyError(IngestError):
    pass


@dataclass(frozen=True)
class MultipartPayload:
    message: str
    filename: str
    content: bytes


# Ingestor states. Each transition checks the current state's type, so
# out-of-order events (data with no open field, a field after Done) are rejected.


@dataclass(frozen=True)
class AwaitingField:
    pass


@dataclass(frozen=True)
class ReadingField:
    name: str


@dataclass(frozen=True)
class Done:
    pass


IngestState = Union[AwaitingField, ReadingField, Done]


@dataclass
class MultipartIngestor:
    state: IngestState = field(default_factory=AwaitingField)
    message: str | None = None
    filename: str | None = None
    content: bytes = b""
    seen: set[str] = field(default_factory=set)
    _buffer: bytearray = field(default_factory=bytearray)

    def start_field(self, name: str, filename: str | None) -> None:
        if not isinstance(self.state, AwaitingField):
            raise MalformedBodyError("Multipart field started before the previous one ended")
        if name not in RECOGNIZED_FIELDS:
            raise UnexpectedFieldError(name)
        if name in self.seen:
            raise MalformedBodyError(f'Duplicate multipart field "{name}"')
        if name == FILE_FIELD:
            if not filename:
                raise MissingFilenameError()
            self.filename = filename

        self.seen.add(name)
        self._buffer = bytearray()
        self.state = ReadingField(name)

    def feed(self, chunk: bytes) -> None:
        if not isinstance(self.state, ReadingField):
            raise MalformedBodyError("Multipart data outside of a field")
        self._buffer.extend(chunk)

    def end_field(self) -> None:
        if not isinstance(self.state, ReadingField):
            raise MalformedBodyError("Multipart field ended without being started")

        name = self.state.name
        data = bytes(self._buffer)
        self._buffer = bytearray()
        self.state = AwaitingField()

        if name == MESSAGE_FIELD:
            try:
                self.message = data.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise InvalidMessageError() from exc
        else:
            self.content = data

    def finish(self) -> MultipartPayload:
        if isinstance(self.state, ReadingField):
            raise MalformedBodyError("Multipart body truncated")
        self.state = Done()

        if FILE_FIELD not in self.seen or not self.content:
            raise NoFileError()

        return MultipartPayload(
            message=self.message or "",
            filename=self.filename or "",
            content=self.content,
        )


def _decode_header(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def multipart_boundary(content_type: str) -> bytes:
    media_type, params = parse_options_header(content_type)
    if media_type.lower() != b"multipart/form-data":
        raise MalformedBodyError("Expected a multipart/form-data body")
    boundary = params.get(b"boundary")
    if not boundary:
        raise MalformedBodyError("Multipart boundary missing")
    return boundary


class _FieldEvents:
    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []
        self.finished = False
        self._header_name = b""
        self._header_value = b""
        self._headers: dict[bytes, bytes] = {}

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_end": self.on_end,
        }

    def on_part_begin(self) -> None:
        self._headers = {}

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_name += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._header_name.lower()] = self._header_value
        self._header_name = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        disposition = self._headers.get(b"content-disposition")
        if disposition is None:
            self.events.append(("error", "Multipart part without Content-Disposition"))
            return
        _, options = parse_options_header(disposition)
        name = _decode_header(options.get(b"name", b""))
        filename = options.get(b"filename")
        self.events.append(("start", (name, _decode_header(filename) if filename else None)))

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        self.events.append(("data", data[start:end]))

    def on_part_end(self) -> None:
        self.events.append(("end", None))

    def on_end(self) -> None:
        self.finished = True


def _apply(ingestor: MultipartIngestor, kind: str, value: object) -> None:
    if kind == "start":
        name, filename = value
        ingestor.start_field(name, filename)
    elif kind == "data":
        ingestor.feed(value)
    elif kind == "end":
        ingestor.end_field()
    else:
        raise MalformedBodyError(str(value))


async def ingest_multipart(content_type: str, chunks: AsyncIterable[bytes]) -> MultipartPayload:
    # Stops at the first offending field; errors from ``chunks`` propagate.
    collector = _FieldEvents()
    try:
        parser = MultipartParser(multipart_boundary(content_type), collector.callbacks())
    except FormParserError as exc:
        raise MalformedBodyError(str(exc)) from exc
    ingestor = MultipartIngestor()
    received = False

    async for chunk in chunks:
        if not chunk:
            continue
        received = True
        try:
            parser.write(chunk)
        except FormParserError as exc:
            raise MalformedBodyError(str(exc)) from exc

        for kind, value in collector.events:
            _apply(ingestor, kind, value)
        collector.events.clear()

        if collector.finished:
            break

    parser.finalize()
    if received and not collector.finished:
        raise MalformedBodyError("Multipart body truncated")

    payload = ingestor.finish()
    logger.debug(
        "multipart body ingested",
        extra={"upload": payload.filename, "size": len(payload.content)},
    )
    return payload
