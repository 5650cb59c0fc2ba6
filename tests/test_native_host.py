"""
Tests for the native-messaging host read loop and request dispatch.

Drives NativeHost with in-memory byte streams, exactly as the browser
would over the child's stdin/stdout.
"""

import io
import json
import struct

import pytest

from conftest import make_annotation
from onui.native_host import NativeHost, handle_native_request
from onui.protocol import FrameDecoder, NativeRequest, encode_frame


def _frame(type, request_id, payload=None):
    return encode_frame({
        "type": type, "requestId": request_id, "sentAt": 1, "payload": payload,
    })


async def _serve(repository, data: bytes) -> list[dict]:
    output = io.BytesIO()
    host = NativeHost(repository, io.BytesIO(data), output)
    await host.run()
    decoder = FrameDecoder()
    decoder.feed(output.getvalue())
    responses = [json.loads(p) for p in decoder]
    assert decoder.buffered == b""
    return responses


class TestHandleRequest:

    @pytest.mark.asyncio
    async def test_ping(self, repository):
        response = await handle_native_request(
            repository, NativeRequest("PING", "p1", 1, {}),
        )
        assert response.ok
        assert response.request_id == "p1"
        assert response.data["pong"] is True
        assert isinstance(response.data["at"], int)

    @pytest.mark.asyncio
    async def test_unsupported_type(self, repository):
        response = await handle_native_request(
            repository, NativeRequest("FLY", "f1", 1, {}),
        )
        assert not response.ok
        assert response.error == "Unsupported request type: FLY"

    @pytest.mark.asyncio
    async def test_invalid_payload(self, repository):
        response = await handle_native_request(
            repository, NativeRequest("DELETE_PAGE", "d1", 1, {"url": "x"}),
        )
        assert not response.ok
        assert response.error.startswith("Invalid payload")
        assert "pageUrl" in response.error

    @pytest.mark.asyncio
    async def test_upsert_then_changes(self, repository):
        response = await handle_native_request(repository, NativeRequest(
            "UPSERT_PAGE_SNAPSHOT", "u1", 1, {
                "pageUrl": "https://example.com/a/",
                "pageTitle": "A",
                "annotations": [make_annotation("a1")],
            },
        ))
        assert response.ok
        assert response.data == {"pageUrl": "https://example.com/a", "annotationCount": 1}

        repository.update_annotation_metadata("a1", {"status": "resolved"})
        response = await handle_native_request(
            repository, NativeRequest("GET_CHANGES_SINCE", "c1", 1, None),
        )
        assert response.ok
        assert [c["annotationId"] for c in response.data["changes"]] == ["a1"]
        assert response.data["latest"] == response.data["changes"][0]["updatedAt"]

    @pytest.mark.asyncio
    async def test_repository_failure_becomes_error_response(self, repository):
        repository.store_path.write_text("{broken", encoding="utf-8")
        response = await handle_native_request(
            repository, NativeRequest("GET_CHANGES_SINCE", "c1", 1, {}),
        )
        assert not response.ok
        assert "not valid JSON" in response.error


class TestReadLoop:

    @pytest.mark.asyncio
    async def test_single_ping(self, repository):
        responses = await _serve(repository, _frame("PING", "p1", {}))
        assert len(responses) == 1
        assert responses[0]["ok"] is True
        assert responses[0]["requestId"] == "p1"
        assert responses[0]["error"] is None

    @pytest.mark.asyncio
    async def test_multiple_frames_answered_by_request_id(self, repository):
        data = (
            _frame("PING", "p1", {})
            + _frame("UPSERT_PAGE_SNAPSHOT", "u1", {
                "pageUrl": "https://example.com/a",
                "annotations": [make_annotation("a1")],
            })
            + _frame("NOPE", "n1", {})
        )
        responses = await _serve(repository, data)
        by_id = {r["requestId"]: r for r in responses}
        assert set(by_id) == {"p1", "u1", "n1"}
        assert by_id["p1"]["ok"] and by_id["u1"]["ok"]
        assert by_id["n1"]["error"] == "Unsupported request type: NOPE"
        assert repository.get_annotations("https://example.com/a")[0]["id"] == "a1"

    @pytest.mark.asyncio
    async def test_malformed_json_gets_unknown_request_id(self, repository):
        data = struct.pack("<I", 5) + b"{}gar"
        responses = await _serve(repository, data)
        assert responses == [{
            "ok": False, "requestId": "unknown", "data": None, "error": "Invalid JSON payload",
        }]

    @pytest.mark.asyncio
    async def test_bad_envelope_then_valid_frame(self, repository):
        data = encode_frame({"hello": "world"}) + _frame("PING", "p2", {})
        responses = await _serve(repository, data)
        errors = [r for r in responses if not r["ok"]]
        assert errors[0]["requestId"] == "unknown"
        assert errors[0]["error"] == "Invalid request envelope"
        assert any(r["requestId"] == "p2" and r["ok"] for r in responses)

    @pytest.mark.asyncio
    async def test_incomplete_trailing_frame_is_dropped(self, repository, caplog):
        data = _frame("PING", "p1", {}) + struct.pack("<I", 100) + b"{\"type\""
        with caplog.at_level("WARNING", logger="onui.native_host"):
            responses = await _serve(repository, data)
        assert [r["requestId"] for r in responses] == ["p1"]
        assert "incomplete frame" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_input(self, repository):
        assert await _serve(repository, b"") == []
