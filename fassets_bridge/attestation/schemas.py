"""
JSON schemas for FDC service responses.

Validated with jsonschema before any field is read, so a malformed
response surfaces as one clear error instead of a KeyError deep inside
the bridge.
"""

from __future__ import annotations

from typing import Any

import jsonschema  # type: ignore[import-untyped]

_HEX = "^0x[0-9a-fA-F]*$"
_HEX32 = "^0x[0-9a-fA-F]{64}$"

PREPARE_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["status"],
    "properties": {
        "status": {"type": "string"},
        "abiEncodedRequest": {"type": "string", "pattern": _HEX},
    },
}

PROOF_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["proof", "response"],
    "properties": {
        "proof": {"type": "array", "items": {"type": "string", "pattern": _HEX32}},
        "response": {
            "type": "object",
            "required": [
                "attestationType",
                "sourceId",
                "votingRound",
                "lowestUsedTimestamp",
                "requestBody",
                "responseBody",
            ],
            "properties": {
                "attestationType": {"type": "string", "pattern": _HEX32},
                "sourceId": {"type": "string", "pattern": _HEX32},
                "votingRound": {"type": ["integer", "string"]},
                "requestBody": {"type": "object"},
                "responseBody": {"type": "object"},
            },
        },
    },
}


def validate(instance: Any, schema: dict[str, Any]) -> None:
    jsonschema.validate(instance=instance, schema=schema)


def is_valid(instance: Any, schema: dict[str, Any]) -> bool:
    return jsonschema.Draft202012Validator(schema).is_valid(instance)
