"""
JSON Schemas describing the structured replies requested from the completion
collaborator. They are sent with every prompt and double as documentation of
the fields each agent reads back.
"""

from typing import Any, Dict

from sheetquery.utils.search_types import AGGREGATION_KINDS, FILTER_OPERATORS, INTENT_TYPES

INTENT_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "enum": list(INTENT_TYPES)},
        "targetColumns": {"type": "array", "items": {"type": "string"}},
        "keyColumn": {"type": ["string", "null"]},
        "filters": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "column": {"type": "string"},
                    "operator": {"type": "string", "enum": list(FILTER_OPERATORS)},
                    "value": {},
                },
                "required": ["column", "operator", "value"],
            },
        },
        "aggregations": {"type": "array", "items": {"type": "string", "enum": list(AGGREGATION_KINDS)}},
    },
    "required": ["type", "targetColumns"],
}

EXPANSION_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"variants": {"type": "array", "items": {"type": "string"}}},
    "required": ["variants"],
}

SHEET_MATCH_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "matches": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "fileId": {"type": "string"},
                    "sheetIndex": {"type": "integer"},
                    "relevanceScore": {"type": "number", "minimum": 0, "maximum": 1},
                    "matchReasons": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["fileId", "sheetIndex", "relevanceScore"],
            },
        }
    },
    "required": ["matches"],
}

SEMANTIC_MATCH_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "columnIndex": {"type": ["integer", "null"]},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "reason": {"type": "string"},
    },
    "required": ["columnIndex"],
}

EXTRACTION_PLAN_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "procedure": {
            "type": "object",
            "properties": {"steps": {"type": "array", "items": {"type": "object"}}},
            "required": ["steps"],
        },
        "description": {"type": "string"},
        "expectedOutputFormat": {"type": "string"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "warnings": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["procedure", "description"],
}
