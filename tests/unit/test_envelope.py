"""Unit tests for envelope parsing and building."""

import json

import pytest

from secure_transmission.crypto import symmetric_decrypt
from secure_transmission.envelope import (
    QueryEnvelope,
    build_query_params,
    build_request_body,
    compute_signature,
    extract_request_data,
    parse_query_envelope,
    parse_signed_headers,
)
from secure_transmission.exceptions import DecodeError, MalformedBodyError, MalformedHeaderError, MissingFieldError
from secure_transmission.headers import get_header, headers_from_scope, replace_header, require_header
from tests.conftest import KEY_HEADER

SIGNED = {KEY_HEADER: "04abcd", "Sign": "deadbeef", "Timestamp": "1700000000"}


class TestHeaders:
    """Test header helpers."""

    def test_case_insensitive(self) -> None:
        assert get_header({"x-encrypt-key": "v"}, "X-Encrypt-Key") == "v"

    def test_blank_is_absent(self) -> None:
        assert get_header({"Sign": "  "}, "Sign") is None

    def test_bytes_values(self) -> None:
        assert get_header({"sign": b"abc"}, "Sign") == "abc"

    def test_require_header_message(self) -> None:
        with pytest.raises(MissingFieldError, match="Sign header is required"):
            require_header({}, "Sign")

    def test_headers_from_scope_first_wins(self) -> None:
        raw = [(b"Sign", b"a"), (b"sign", b"b"), (b"timestamp", b"1")]
        assert headers_from_scope(raw) == {"sign": "a", "timestamp": "1"}

    def test_replace_header(self) -> None:
        raw = [(b"content-length", b"10"), (b"content-type", b"application/json")]
        assert replace_header(raw, b"Content-Length", b"3") == [
            (b"content-type", b"application/json"),
            (b"content-length", b"3"),
        ]
        assert replace_header(raw, b"content-length", None) == [(b"content-type", b"application/json")]


class TestSignedHeaders:
    """Test parse_signed_headers."""

    def test_parses(self) -> None:
        envelope = parse_signed_headers(SIGNED, KEY_HEADER)
        assert envelope.wrapped_key == "04abcd"
        assert envelope.signature == "deadbeef"
        assert envelope.timestamp == 1700000000

    def test_wrapped_key_not_in_repr(self) -> None:
        assert "04abcd" not in repr(parse_signed_headers(SIGNED, KEY_HEADER))

    @pytest.mark.parametrize("missing", [KEY_HEADER, "Sign", "Timestamp"])
    def test_missing(self, missing: str) -> None:
        headers = {k: v for k, v in SIGNED.items() if k != missing}
        with pytest.raises(MissingFieldError, match=missing):
            parse_signed_headers(headers, KEY_HEADER)

    def test_check_order(self) -> None:
        """The key header is reported first when everything is missing."""
        with pytest.raises(MissingFieldError, match=KEY_HEADER):
            parse_signed_headers({}, KEY_HEADER)

    @pytest.mark.parametrize(
        "timestamp",
        ["soon", "1.5", "0x10", "1_700_000_000", "+1700000000", "\u0661\u0667\u0660\u0660"],
        ids=["word", "float", "hex", "underscores", "plus-sign", "arabic-indic-digits"],
    )
    def test_non_integer_timestamp(self, timestamp: str) -> None:
        with pytest.raises(MalformedHeaderError, match="Timestamp"):
            parse_signed_headers({**SIGNED, "Timestamp": timestamp}, KEY_HEADER)

    def test_negative_timestamp(self) -> None:
        assert parse_signed_headers({**SIGNED, "Timestamp": "-5"}, KEY_HEADER).timestamp == -5

    def test_errors_are_decode_errors(self) -> None:
        with pytest.raises(DecodeError) as exc_info:
            parse_signed_headers({}, KEY_HEADER)
        assert exc_info.value.status_code == 400


class TestQueryEnvelope:
    """Test parse_query_envelope."""

    @pytest.mark.parametrize("data", [None, "", "  "])
    def test_nothing_to_decode(self, data: str | None) -> None:
        assert parse_query_envelope(data, {KEY_HEADER: "04ab"}, KEY_HEADER) is None

    def test_direct(self) -> None:
        envelope = parse_query_envelope("04ff", {}, KEY_HEADER)
        assert envelope == QueryEnvelope(data="04ff")
        assert not envelope.is_hybrid

    def test_hybrid(self) -> None:
        envelope = parse_query_envelope(" abcd ", {KEY_HEADER.lower(): "04ab"}, KEY_HEADER)
        assert envelope is not None
        assert envelope.data == "abcd"
        assert envelope.wrapped_key == "04ab"
        assert envelope.is_hybrid


class TestBody:
    """Test request body helpers."""

    def test_extract(self) -> None:
        assert extract_request_data(b'{"requestData":"abcd","other":1}') == "abcd"

    @pytest.mark.parametrize(
        "body",
        [b"", b"not json", b"[1,2]", b"{}", b'{"requestData":null}', b'{"requestData":""}', b'{"requestData":5}'],
        ids=["empty", "not-json", "array", "missing", "null", "blank", "number"],
    )
    def test_extract_malformed(self, body: bytes) -> None:
        with pytest.raises(MalformedBodyError):
            extract_request_data(body)

    def test_deeply_nested_body(self) -> None:
        """Nesting past the recursion limit is a malformed body, not a crash."""
        with pytest.raises(MalformedBodyError):
            extract_request_data(b"[" * 100000)

    def test_missing_message(self) -> None:
        with pytest.raises(MalformedBodyError, match="Parameter requestData is missing"):
            extract_request_data(b'{"data":"abcd"}')

    def test_build_request_body(self) -> None:
        assert build_request_body("abcd") == b'{"requestData":"abcd"}'
        assert json.loads(build_request_body("ff"))["requestData"] == "ff"

    def test_build_query_params(self) -> None:
        assert build_query_params("abcd") == {"data": "abcd"}


class TestSignature:
    """Test compute_signature."""

    def test_concatenation(self, symmetric_key: str) -> None:
        """Sign = SM4(prefix + timestamp + plaintext)."""
        sign = compute_signature("PFX", 1700000000, '{"a":1}', symmetric_key)
        assert symmetric_decrypt(sign, symmetric_key) == 'PFX1700000000{"a":1}'

    def test_empty_prefix(self, symmetric_key: str) -> None:
        sign = compute_signature("", 5, "x", symmetric_key)
        assert symmetric_decrypt(sign, symmetric_key) == "5x"
