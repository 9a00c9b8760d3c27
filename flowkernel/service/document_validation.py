from __future__ import annotations

from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from flowkernel.nodes.config import NODE_TYPES

_REQUIRES_CONFIG = ("CODE", "CONDITION", "SWITCH", "LOOP", "HTTP")

_WORKFLOW_DOCUMENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "version": {"type": "integer", "minimum": 1},
        "nodes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"enum": list(NODE_TYPES)},
                    "name": {"type": "string"},
                    "config": {"type": "object"},
                    "position": {"type": "object"},
                },
                "required": ["id", "type"],
                "allOf": [
                    {
                        "if": {"properties": {"type": {"enum": list(_REQUIRES_CONFIG)}}},
                        "then": {"required": ["config"]},
                    },
                    {
                        "if": {"properties": {"type": {"const": "GROUP"}}},
                        "then": {
                            "properties": {
                                "config": {
                                    "type": "object",
                                    "properties": {
                                        "childNodeIds": {
                                            "type": "array",
                                            "items": {"type": "string"},
                                        }
                                    },
                                }
                            }
                        },
                    },
                ],
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["string", "null"]},
                    "source": {"type": "string", "minLength": 1},
                    "target": {"type": "string", "minLength": 1},
                    "sourceHandle": {"type": ["string", "null"]},
                    "targetHandle": {"type": ["string", "null"]},
                },
                "required": ["source", "target"],
            },
        },
        "globalVariables": {"type": "object"},
        "settings": {"type": "object"},
    },
    "required": ["nodes"],
    "additionalProperties": True,
}

_VALIDATOR = Draft202012Validator(_WORKFLOW_DOCUMENT_SCHEMA)


def _format_error(error) -> str:
    location = "/".join(str(part) for part in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


def document_errors(document: Any) -> List[str]:
    """Schema violations of a raw workflow document, in document order."""
    errors = sorted(_VALIDATOR.iter_errors(document), key=lambda e: list(map(str, e.path)))
    return [_format_error(e) for e in errors]
