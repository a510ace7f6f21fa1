from __future__ import annotations

QUERY_STRATEGY_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": True,
    "properties": {
        "filters": {
            "type": "object",
            "additionalProperties": {
                "anyOf": [
                    {"type": "string"},
                    {"type": "array", "items": {"type": "string"}},
                ]
            },
        },
        "columns": {"type": "array", "items": {"type": "string"}},
        "logic": {"type": "string"},
        "join_on": {"type": ["string", "null"]},
    },
}

REPORT_PLAN_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": True,
    "required": ["plan_id", "steps"],
    "properties": {
        "plan_id": {"type": "string", "minLength": 1},
        "total_steps": {"type": "integer", "minimum": 0},
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": True,
                "required": ["step_number", "dataset_id"],
                "properties": {
                    "step_number": {"type": "integer", "minimum": 1},
                    "dataset_id": {"type": "string"},
                    "purpose": {"type": "string"},
                    "query_strategy": QUERY_STRATEGY_SCHEMA,
                    "dependencies": {"type": "array", "items": {"type": "integer"}},
                    "expected_output": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
    },
}

STEP_PROGRESS_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": True,
    "required": ["step_number", "status"],
    "properties": {
        "step_number": {"type": "integer"},
        "purpose": {"type": ["string", "null"]},
        "dataset_id": {"type": ["string", "null"]},
        "status": {"type": "string", "enum": ["started", "completed", "error"]},
        "step_result": {"type": ["string", "null"]},
    },
}

EXECUTION_PROGRESS_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": True,
    "required": ["status"],
    "properties": {
        "report_id": {"type": "string"},
        "steps": {"type": "array", "items": STEP_PROGRESS_SCHEMA},
        "final_report": {"type": ["string", "null"]},
        "status": {"type": "string", "enum": ["starting", "in_progress", "completed", "error"]},
        "error_message": {"type": ["string", "null"]},
    },
}

EXECUTION_TICKET_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": True,
    "required": ["report_id"],
    "properties": {
        "report_id": {"type": "string", "minLength": 1},
        "total_steps": {"type": "integer", "minimum": 0},
    },
}

PROMPT_DIALOG_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": True,
    "required": ["questions"],
    "properties": {
        "questions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "question"],
                "properties": {
                    "id": {"type": "string"},
                    "question": {"type": "string"},
                    "hint": {"type": "string"},
                },
            },
        }
    },
}
