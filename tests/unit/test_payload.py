"""
Unit tests for the payload codec.
"""

import json

import pytest

from messagebox.core.exceptions import DeserializationError, SchemaMismatchError
from messagebox.core.payload import (
    compute_payload_hash,
    decode_payload,
    encode_payload,
    validate_record,
)


class TestValidateRecord:
    """Tests for record validation against batch headers."""

    def test_matching_record_passes(self):
        """Test a record with exactly the headers is accepted."""
        validate_record(["id", "name"], {"name": "Luke", "id": "1"}, 0)

    def test_missing_key_rejected(self):
        """Test a record without one of the headers is rejected."""
        with pytest.raises(SchemaMismatchError) as exc_info:
            validate_record(["id", "name"], {"id": "1"}, 3)

        assert exc_info.value.record_index == 3
        assert "name" in str(exc_info.value)

    def test_extra_key_rejected(self):
        """Test a record with an unknown key is rejected."""
        with pytest.raises(SchemaMismatchError):
            validate_record(["id"], {"id": "1", "rank": "Jedi"}, 0)

    def test_non_mapping_rejected(self):
        """Test a record that is not a dict is rejected."""
        with pytest.raises(SchemaMismatchError):
            validate_record(["id"], ["1"], 0)


class TestEncodeDecode:
    """Tests for payload encoding and decoding."""

    def test_decode_returns_headers_and_record(self):
        """Test a written payload reads back unchanged."""
        payload = encode_payload(["id", "name"], {"id": "1", "name": "Luke Skywalker"})

        headers, record = decode_payload(payload, "m1", compute_payload_hash(payload))

        assert headers == ["id", "name"]
        assert record == {"id": "1", "name": "Luke Skywalker"}

    def test_values_stored_as_strings(self):
        """Test non-string values become text and None becomes empty."""
        payload = encode_payload(["id", "homeworld"], {"id": 7, "homeworld": None})

        assert json.loads(payload)["record"] == {"id": "7", "homeworld": ""}

    def test_non_ascii_preserved(self):
        """Test unicode values survive the codec."""
        payload = encode_payload(["name"], {"name": "Padmé"})

        assert decode_payload(payload)[1]["name"] == "Padmé"

    def test_hash_is_sha256_hex(self):
        """Test payload hash format."""
        digest = compute_payload_hash("abc")

        assert len(digest) == 64
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestDecodeFailures:
    """Tests for corrupt payloads."""

    def test_invalid_json(self):
        """Test text that is not JSON."""
        with pytest.raises(DeserializationError) as exc_info:
            decode_payload("{not json", message_id="m1")

        assert exc_info.value.message_id == "m1"

    def test_none_payload(self):
        """Test a missing payload."""
        with pytest.raises(DeserializationError):
            decode_payload(None)

    def test_not_an_object(self):
        """Test a JSON array payload."""
        with pytest.raises(DeserializationError):
            decode_payload('["id"]')

    def test_keys_do_not_match_headers(self):
        """Test a record whose keys disagree with its own headers."""
        payload = json.dumps({"headers": ["id", "name"], "record": {"id": "1"}})

        with pytest.raises(DeserializationError):
            decode_payload(payload)

    def test_non_string_value(self):
        """Test a record holding a number."""
        payload = json.dumps({"headers": ["id"], "record": {"id": 1}})

        with pytest.raises(DeserializationError):
            decode_payload(payload)

    def test_hash_mismatch(self):
        """Test a payload altered after it was written."""
        payload = encode_payload(["id"], {"id": "1"})
        digest = compute_payload_hash(payload)
        tampered = payload.replace('"1"', '"2"')

        with pytest.raises(DeserializationError):
            decode_payload(tampered, "m1", digest)
