"""
Native-messaging host: framed requests on stdin, framed responses on stdout.

The browser spawns this process (``onui native-host``) through the
registered manifest. Each complete frame is dispatched as its own task and
the read loop keeps scanning without waiting for it, so responses can be
written in a different order than requests arrived. Callers correlate by
``requestId``; when two requests touch the same data, whichever takes the
store lock first wins.

stdout carries protocol frames only. Logging goes to stderr and the ops log.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import BinaryIO, Optional

from pydantic import ValidationError

from .protocol import (
    REQUEST_DELETE_PAGE,
    REQUEST_GET_CHANGES_SINCE,
    REQUEST_PING,
    REQUEST_UPSERT_PAGE_SNAPSHOT,
    UNKNOWN_REQUEST_ID,
    DeletePagePayload,
    FrameDecoder,
    GetChangesSincePayload,
    NativeRequest,
    NativeResponse,
    UpsertPageSnapshotPayload,
    create_response,
    encode_frame,
    parse_request,
)
from .errors import ProtocolError
from .repository import StoreRepository
from .types import now_ms

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def _validation_message(e: ValidationError) -> str:
    first = e.errors()[0] if e.errors() else {}
    loc = ".".join(str(part) for part in first.get("loc", ()))
    msg = first.get("msg", str(e))
    return f"Invalid payload: {loc}: {msg}" if loc else f"Invalid payload: {msg}"


async def handle_native_request(
    repository: StoreRepository, request: NativeRequest,
) -> NativeResponse:
    """Dispatch one request to the repository. Never raises."""
    try:
        if request.type == REQUEST_PING:
            return create_response(request.request_id, True, {"pong": True, "at": now_ms()})

        if request.type == REQUEST_UPSERT_PAGE_SNAPSHOT:
            payload = UpsertPageSnapshotPayload.model_validate(request.payload)
            result = await asyncio.to_thread(
                repository.upsert_page_snapshot,
                payload.page_url,
                payload.page_title,
                payload.annotation_dicts(),
            )
            return create_response(request.request_id, True, result)

        if request.type == REQUEST_DELETE_PAGE:
            payload = DeletePagePayload.model_validate(request.payload)
            result = await asyncio.to_thread(repository.delete_page_snapshot, payload.page_url)
            return create_response(request.request_id, True, result)

        if request.type == REQUEST_GET_CHANGES_SINCE:
            payload = GetChangesSincePayload.model_validate(request.payload or {})
            result = await asyncio.to_thread(
                repository.get_changes_since, payload.since, payload.limit,
            )
            return create_response(request.request_id, True, result)

        return create_response(
            request.request_id, False, error=f"Unsupported request type: {request.type}",
        )
    except ValidationError as e:
        return create_response(request.request_id, False, error=_validation_message(e))
    except Exception as e:
        logger.warning("Request %s (%s) failed: %s", request.request_id, request.type, e)
        return create_response(request.request_id, False, error=str(e) or type(e).__name__)


class NativeHost:
    """
    Read loop over a binary input stream.

    Args:
        repository: Store operations to dispatch to
        input: Binary stream of length-prefixed request frames
        output: Binary stream for length-prefixed response frames
    """

    def __init__(self, repository: StoreRepository, input: BinaryIO, output: BinaryIO):
        self._repository = repository
        self._input = input
        self._output = output
        self._decoder = FrameDecoder()
        self._pending: set[asyncio.Task] = set()

    def _write(self, response: NativeResponse) -> None:
        # Called only from the event loop thread, so frames never interleave
        self._output.write(encode_frame(response))
        self._output.flush()

    def _read_chunk(self) -> bytes:
        read1 = getattr(self._input, "read1", None)
        if read1 is not None:
            return read1(READ_CHUNK_SIZE)
        return self._input.read(READ_CHUNK_SIZE)

    async def _dispatch(self, request: NativeRequest) -> None:
        response = await handle_native_request(self._repository, request)
        self._write(response)

    def process_frames(self) -> None:
        """Parse every complete buffered frame; dispatch valid ones as tasks."""
        for raw in self._decoder:
            try:
                request = parse_request(raw)
            except ProtocolError as e:
                logger.warning("Rejected frame (%d bytes): %s", len(raw), e)
                self._write(create_response(UNKNOWN_REQUEST_ID, False, error=str(e)))
                continue

            logger.debug("Dispatching %s %s", request.type, request.request_id)
            task = asyncio.create_task(self._dispatch(request))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def run(self) -> None:
        """Serve until EOF on input, then wait for in-flight requests."""
        logger.info("Native host started (store: %s)", self._repository.store_path)
        while True:
            chunk = await asyncio.to_thread(self._read_chunk)
            if not chunk:
                break
            self._decoder.feed(chunk)
            self.process_frames()

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._decoder.buffered:
            logger.warning("Discarding %d bytes of incomplete frame at EOF",
                           len(self._decoder.buffered))
        logger.info("Native host stopped")


def run_native_host(store_path: Optional[Path] = None) -> None:
    """Process entry point: serve stdin/stdout until the browser closes the pipe."""
    from .config import load_or_create_config, resolve_store_path
    from .logging_config import configure_ops_log

    config = load_or_create_config()
    configure_ops_log(config.data_dir)
    repository = StoreRepository(
        store_path or resolve_store_path(config),
        lock_attempts=config.store.lock_attempts,
        lock_retry_delay=config.store.lock_retry_delay,
    )
    host = NativeHost(repository, sys.stdin.buffer, sys.stdout.buffer)
    asyncio.run(host.run())
