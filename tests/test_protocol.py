"""
Tests for native-messaging framing, envelopes and payload models.
"""

import json
import struct

import pytest
from pydantic import ValidationError

from onui.errors import ProtocolError
from onui.protocol import (
    HEADER_SIZE,
    FrameDecoder,
    GetChangesSincePayload,
    MetadataPatch,
    NativeResponse,
    UpsertPageSnapshotPayload,
    create_response,
    encode_frame,
    is_native_request,
    parse_request,
    read_frame,
)


def _request(**overrides):
    request = {"type": "PING", "requestId": "r1", "sentAt": 1, "payload": {}}
    request.update(overrides)
    return request


class TestFraming:

    def test_encode_prefixes_little_endian_length(self):
        frame = encode_frame({"a": 1})
        (length,) = struct.unpack("<I", frame[:HEADER_SIZE])
        assert length == len(frame) - HEADER_SIZE
        assert json.loads(frame[HEADER_SIZE:]) == {"a": 1}

    def test_encode_response_object(self):
        frame = encode_frame(create_response("r1", True, {"pong": True}))
        assert json.loads(frame[HEADER_SIZE:]) == {
            "ok": True, "requestId": "r1", "data": {"pong": True}, "error": None,
        }

    def test_two_back_to_back_frames(self):
        decoder = FrameDecoder()
        decoder.feed(encode_frame({"n": 1}) + encode_frame({"n": 2}))
        assert [json.loads(p) for p in decoder] == [{"n": 1}, {"n": 2}]
        assert decoder.buffered == b""

    def test_split_across_chunks(self):
        frame = encode_frame({"hello": "world"})
        decoder = FrameDecoder()
        for i in range(len(frame) - 1):
            decoder.feed(frame[i:i + 1])
            assert decoder.decode() is None
        decoder.feed(frame[-1:])
        assert json.loads(decoder.decode()) == {"hello": "world"}

    def test_partial_header_waits(self):
        decoder = FrameDecoder()
        decoder.feed(b"\x02\x00")
        assert decoder.decode() is None
        assert decoder.buffered == b"\x02\x00"

    def test_trailing_bytes_stay_buffered(self):
        decoder = FrameDecoder()
        decoder.feed(struct.pack("<I", 2) + b"{}garbage")
        assert decoder.decode() == b"{}"
        assert decoder.buffered == b"garbage"
        # "garb" read as a header announces a frame far larger than what's buffered
        assert decoder.decode() is None

    def test_short_length_reads_exactly_that_many_bytes(self):
        decoder = FrameDecoder()
        decoder.feed(struct.pack("<I", 5) + b"{}garbage")
        assert decoder.decode() == b"{}gar"
        assert decoder.buffered == b"bage"
        assert decoder.decode() is None

    def test_empty_payload_frame(self):
        assert read_frame(struct.pack("<I", 0)) == b""

    def test_read_frame_incomplete(self):
        assert read_frame(struct.pack("<I", 10) + b"abc") is None
        assert read_frame(b"") is None


class TestEnvelope:

    def test_valid_request(self):
        assert is_native_request(_request())

    @pytest.mark.parametrize("bad", [
        None,
        [],
        "PING",
        {"type": "PING", "requestId": "r1", "sentAt": 1},
        _request(type=5),
        _request(requestId=None),
        _request(sentAt="now"),
        _request(sentAt=True),
    ])
    def test_invalid_requests(self, bad):
        assert not is_native_request(bad)

    def test_payload_may_be_null(self):
        assert is_native_request(_request(payload=None))

    def test_parse_request(self):
        request = parse_request(json.dumps(_request(type="DELETE_PAGE")).encode())
        assert request.type == "DELETE_PAGE"
        assert request.request_id == "r1"
        assert request.payload == {}

    def test_parse_invalid_json(self):
        with pytest.raises(ProtocolError, match="Invalid JSON payload"):
            parse_request(b"{}gar")

    def test_parse_invalid_utf8(self):
        with pytest.raises(ProtocolError, match="Invalid JSON payload"):
            parse_request(b"\xff\xfe")

    def test_parse_invalid_envelope(self):
        with pytest.raises(ProtocolError, match="Invalid request envelope"):
            parse_request(b"{}")

    def test_response_from_dict(self):
        response = NativeResponse.from_dict({"ok": False, "requestId": "x", "error": "nope"})
        assert response == NativeResponse(ok=False, request_id="x", data=None, error="nope")


class TestPayloads:

    def test_upsert_payload_keeps_unknown_annotation_fields(self):
        payload = UpsertPageSnapshotPayload.model_validate({
            "pageUrl": "https://example.com/a",
            "annotations": [{"id": "a1", "updatedAt": 5, "boundingBox": {"x": 1}}],
        })
        assert payload.page_title == ""
        assert payload.annotation_dicts() == [
            {"id": "a1", "updatedAt": 5, "boundingBox": {"x": 1}},
        ]

    def test_upsert_payload_requires_page_url(self):
        with pytest.raises(ValidationError):
            UpsertPageSnapshotPayload.model_validate({"annotations": []})

    def test_upsert_payload_requires_annotation_id(self):
        with pytest.raises(ValidationError):
            UpsertPageSnapshotPayload.model_validate({
                "pageUrl": "https://example.com/a",
                "annotations": [{"updatedAt": 5}],
            })

    def test_changes_payload_defaults(self):
        payload = GetChangesSincePayload.model_validate({})
        assert payload.since == 0
        assert payload.limit == 200

    def test_changes_payload_rejects_negative_limit(self):
        with pytest.raises(ValidationError):
            GetChangesSincePayload.model_validate({"limit": -1})

    def test_metadata_patch(self):
        patch = MetadataPatch.model_validate({"status": "resolved", "comment": None})
        assert patch.to_patch() == {"status": "resolved"}

    @pytest.mark.parametrize("bad", [{"status": "done"}, {"pageUrl": "x"}])
    def test_metadata_patch_rejects(self, bad):
        with pytest.raises(ValidationError):
            MetadataPatch.model_validate(bad)
