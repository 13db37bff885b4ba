"""Stdin frames and control-request question handling for the agent protocol."""

from __future__ import annotations

import json
from typing import Any, Literal

from agent_bridge.models import (
    Answer,
    ControlRequest,
    MultiQuestion,
    QuestionInfo,
    QuestionOption,
    ToolPermission,
)

# Tools whose input is itself a list of questions for the operator.
MULTI_QUESTION_TOOLS = frozenset({"AskUserQuestion"})

ALLOW_LABEL = "Yes"
DENY_LABEL = "No"

# Keys that best summarize a tool's input, in order of preference.
SUMMARY_KEYS = ("command", "file_path", "path", "url", "pattern", "description", "prompt")

Behavior = Literal["allow", "deny"]


def build_user_frame(text: str) -> dict[str, Any]:
    """The frame that hands a user prompt to the agent."""
    return {"type": "user", "message": {"role": "user", "content": text}}


def build_control_response(
    request_id: str,
    behavior: Behavior,
    *,
    updated_input: dict[str, Any] | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    """Answer to a ``control_request``, written back on the agent's stdin."""
    response: dict[str, Any] = {"behavior": behavior}
    if updated_input is not None:
        response["updatedInput"] = updated_input
    if message is not None:
        response["message"] = message
    return {
        "type": "control_response",
        "response": {"request_id": request_id, "subtype": "success", "response": response},
    }


def encode_frame(frame: dict[str, Any]) -> bytes:
    """One frame per line."""
    return (json.dumps(frame, ensure_ascii=False) + "\n").encode("utf-8")


def describe_tool_input(tool_name: str, tool_input: dict[str, Any], limit: int) -> str:
    """Human readable preview of what a tool is about to do."""
    summary = ""
    for key in SUMMARY_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            summary = value.strip()
            break
    if not summary and tool_input:
        summary = json.dumps(tool_input, ensure_ascii=False, sort_keys=True)
    if not summary:
        summary = f"{tool_name} (no input)"
    return _truncate(summary, limit)


def _truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def permission_question(tool_name: str, tool_input: dict[str, Any], limit: int) -> QuestionInfo:
    """Synthesized Yes/No question for a tool permission request."""
    preview = describe_tool_input(tool_name, tool_input, limit)
    return QuestionInfo(
        question=f"Allow {tool_name} to run?\n{preview}",
        header=f"Permission: {tool_name}",
        options=[
            QuestionOption(label=ALLOW_LABEL, description=f"Run {tool_name}: {preview}"),
            QuestionOption(label=DENY_LABEL, description=f"Do not run {tool_name}"),
        ],
        multiple=False,
    )


def parse_questions(tool_input: dict[str, Any]) -> list[QuestionInfo]:
    """Questions carried verbatim in a multi-question tool's input."""
    questions: list[QuestionInfo] = []
    raw = tool_input.get("questions")
    if not isinstance(raw, list):
        return questions
    for item in raw:
        if not isinstance(item, dict):
            continue
        options = []
        for option in item.get("options") or []:
            if isinstance(option, dict) and option.get("label"):
                options.append(
                    QuestionOption(
                        label=str(option["label"]),
                        description=str(option.get("description") or ""),
                    )
                )
            elif isinstance(option, str):
                options.append(QuestionOption(label=option))
        questions.append(
            QuestionInfo(
                question=str(item.get("question") or ""),
                header=str(item.get("header") or ""),
                options=options,
                multiple=bool(item.get("multiSelect") or item.get("multiple")),
            )
        )
    return questions


def classify_request(tool_name: str, tool_input: dict[str, Any]) -> ControlRequest:
    """Turn the body of a ``control_request`` into its typed variant."""
    if tool_name in MULTI_QUESTION_TOOLS:
        return MultiQuestion(
            tool_name=tool_name, input=tool_input, questions=parse_questions(tool_input)
        )
    return ToolPermission(tool_name=tool_name, input=tool_input)


def questions_for(request: ControlRequest, preview_limit: int) -> list[QuestionInfo]:
    """What the operator is shown for a request."""
    if isinstance(request, MultiQuestion):
        return request.questions
    return [permission_question(request.tool_name, request.input, preview_limit)]


def merge_answers(
    tool_input: dict[str, Any], questions: list[QuestionInfo], answers: list[list[str]]
) -> dict[str, Any]:
    """Copy of ``tool_input`` with the selected labels keyed by question text."""
    merged = dict(tool_input)
    existing = merged.get("answers")
    collected: dict[str, Any] = dict(existing) if isinstance(existing, dict) else {}
    for index, question in enumerate(questions):
        selected = answers[index] if index < len(answers) else []
        collected[question.question] = ", ".join(selected)
    merged["answers"] = collected
    return merged


def resolve_response(
    request_id: str, request: ControlRequest, questions: list[QuestionInfo], answer: Answer
) -> tuple[dict[str, Any], bool]:
    """Build the control response for an answer.

    Returns the frame and whether it grants the request.
    """
    if answer.rejected:
        frame = build_control_response(
            request_id, "deny", message="The user dismissed this request"
        )
        return frame, False

    if isinstance(request, MultiQuestion):
        merged = merge_answers(request.input, questions, answer.answers)
        return build_control_response(request_id, "allow", updated_input=merged), True

    selected = answer.answers[0] if answer.answers else []
    if ALLOW_LABEL in selected:
        return build_control_response(request_id, "allow", updated_input=request.input), True
    frame = build_control_response(
        request_id, "deny", message=f"The user denied permission to use {request.tool_name}"
    )
    return frame, False
