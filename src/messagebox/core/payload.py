"""
Payload codec for single-record messages.

A message payload is JSON text of the form::

    {"headers": ["id", "name"], "record": {"id": "1", "name": "Luke"}}
"""

import hashlib
import json
from typing import Any, List, Optional, Sequence, Tuple

from .exceptions import DeserializationError, SchemaMismatchError
from .models import Headers, Record


def compute_payload_hash(payload: str) -> str:
    """Hex-encoded SHA256 of the payload text."""
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def validate_record(headers: Sequence[str], record: Any, index: Optional[int] = None) -> None:
    """
    Check that a record carries exactly the batch headers.

    Raises:
        SchemaMismatchError: if the record is not a mapping of the headers
    """
    if not isinstance(record, dict):
        raise SchemaMismatchError(
            f"Record {index} is not a mapping: {type(record).__name__}",
            record_index=index,
        )

    expected = set(headers)
    actual = set(record.keys())
    if expected != actual:
        missing = sorted(expected - actual)
        extra = sorted(actual - expected)
        raise SchemaMismatchError(
            f"Record {index} does not match headers "
            f"(missing={missing}, unexpected={extra})",
            record_index=index,
        )


def encode_payload(headers: Sequence[str], record: Record) -> str:
    """
    Serialize one record with its headers.

    Values are stored as strings; None becomes the empty string.
    """
    normalized = {
        key: "" if value is None else str(value)
        for key, value in record.items()
    }
    return json.dumps(
        {"headers": list(headers), "record": normalized},
        ensure_ascii=False,
    )


def decode_payload(
    payload: str,
    message_id: Optional[str] = None,
    expected_hash: Optional[str] = None,
) -> Tuple[Headers, Record]:
    """
    Parse a payload back into headers and record.

    Args:
        payload: JSON text written by ``encode_payload``
        message_id: Message the payload belongs to (for error reporting)
        expected_hash: Hash recorded at write time, verified when given

    Returns:
        Tuple of (headers, record)

    Raises:
        DeserializationError: if the payload cannot be parsed against its
            own headers
    """
    if payload is None:
        raise DeserializationError("Payload is empty", message_id=message_id)

    if expected_hash and compute_payload_hash(payload) != expected_hash:
        raise DeserializationError(
            f"Payload hash mismatch for message {message_id}",
            message_id=message_id,
        )

    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        raise DeserializationError(
            f"Payload is not valid JSON: {e}", message_id=message_id
        ) from e

    if not isinstance(data, dict):
        raise DeserializationError("Payload is not a JSON object", message_id=message_id)

    headers = data.get("headers")
    record = data.get("record")

    if not isinstance(headers, list) or not all(isinstance(h, str) for h in headers):
        raise DeserializationError("Payload headers are missing or malformed", message_id=message_id)
    if not isinstance(record, dict):
        raise DeserializationError("Payload record is missing or malformed", message_id=message_id)
    if not all(isinstance(v, str) for v in record.values()):
        raise DeserializationError("Payload record contains non-string values", message_id=message_id)
    if set(record.keys()) != set(headers):
        raise DeserializationError(
            "Payload record keys do not match its headers", message_id=message_id
        )

    headers_list: List[str] = list(headers)
    return headers_list, dict(record)
