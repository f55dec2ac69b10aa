"""
Chat assistant with patient-scoped retrieval.

Replies in the chat.completion shape.  Tool suggestions are advisory only:
they carry the registry's confirmation flag and must be submitted to
/tools/invoke to run.
"""

from __future__ import annotations

import json
import math
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime
from typing import Any

from .errors import InvalidRequest
from .llm_client import LlmClient, LlmError
from .logging import get_logger
from .metrics import METRICS
from .models import ChatMessage
from .registry import ToolRegistry
from .retrieval import ContextRetriever, ContextSnippet
from .store import DataStore

__all__ = ["ChatAssistant", "build_context", "calculate_age", "SUGGESTION_RULES"]

logger = get_logger("toolgate.assistant")

MODEL_NAME = "toolgate-emr-assistant"

SYSTEM_PROMPT = """You are a clinical documentation assistant embedded in an EMR.
You can see the patient context below and answer questions about history,
medications, lab results and care plans.

- Base every answer on the provided patient context.
- Use precise clinical terminology.
- Say so when the context does not support an answer.
- Suggest follow-up actions when relevant; never claim to have performed one.
- Treat all patient information as confidential.

Patient Context:
{context}"""

# (keywords, tool, suggested args); evaluated in order
SUGGESTION_RULES: tuple[tuple[tuple[str, ...], str, dict[str, Any]], ...] = (
    (
        ("summary", "timeline", "history"),
        "get_patient_timeline",
        {"timeframe": "90days", "include_types": ["encounters", "labs", "medications", "appointments"]},
    ),
    (
        ("note", "soap", "draft"),
        "draft_progress_note",
        {"template": "soap", "context": "Requested from the assistant"},
    ),
    (
        ("appointment", "schedule"),
        "create_appointment",
        {"appointment_type": "follow-up", "duration_minutes": 30, "reason": "Follow-up requested from the assistant"},
    ),
)

INTENT_REPLIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("summary", "timeline"),
        "I can pull the patient's timeline: recent encounters, lab results, medications "
        "and appointments. Shall I run it?",
    ),
    (
        ("note", "soap", "documentation"),
        "I can draft a SOAP progress note from the patient's recent data. It is saved as a "
        "draft for your review. Shall I proceed?",
    ),
    (
        ("appointment", "schedule", "follow"),
        "I can schedule an appointment for this patient. Appointments are only booked after "
        "you confirm them. Shall I prepare one?",
    ),
)

GENERAL_REPLY = (
    "I'm the EMR assistant. I can answer questions about a patient's history, medications "
    "and labs, draft clinical notes, and prepare follow-up appointments for your confirmation."
)


def calculate_age(date_of_birth: Any, today: date) -> int | None:
    if isinstance(date_of_birth, datetime):
        born = date_of_birth.date()
    elif isinstance(date_of_birth, date):
        born = date_of_birth
    elif isinstance(date_of_birth, str):
        try:
            born = date.fromisoformat(date_of_birth[:10])
        except ValueError:
            return None
    else:
        return None
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def build_context(patient: dict[str, Any], snippets: Sequence[ContextSnippet], today: date) -> str:
    lines = [
        "Patient Information:",
        f"Name: {patient.get('first_name', '')} {patient.get('last_name', '')}".rstrip(),
    ]
    age = calculate_age(patient.get("date_of_birth"), today)
    if age is not None:
        lines.append(f"Age: {age}")
    if patient.get("gender"):
        lines.append(f"Gender: {patient['gender']}")
    allergies = patient.get("allergies") or []
    if allergies:
        lines.append(f"Allergies: {', '.join(allergies)}")
    if snippets:
        lines.append("")
        lines.append("Relevant Medical Information:")
        lines.extend(f"{i}. {s.content_type}: {s.text}" for i, s in enumerate(snippets, start=1))
    return "\n".join(lines)


def _estimate_tokens(texts: Sequence[str]) -> int:
    return sum(math.ceil(len(t) / 4) for t in texts)


class ChatAssistant:
    def __init__(
        self,
        store: DataStore,
        retriever: ContextRetriever,
        llm: LlmClient,
        registry: ToolRegistry,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._retriever = retriever
        self._llm = llm
        self._registry = registry
        self._clock = clock

    def suggest_tools(self, message: str) -> list[dict[str, Any]]:
        text = message.lower()
        out = []
        for keywords, tool, args in SUGGESTION_RULES:
            if any(k in text for k in keywords):
                out.append(
                    {
                        "id": f"call_{tool}",
                        "type": "function",
                        "function": {"name": tool, "arguments": json.dumps(args)},
                        "requires_confirmation": self._registry.resolve(tool).confirmation_required,
                    }
                )
        return out

    @staticmethod
    def _intent_reply(message: str) -> str:
        text = message.lower()
        for keywords, reply in INTENT_REPLIES:
            if any(k in text for k in keywords):
                return reply
        return GENERAL_REPLY

    def _patient_reply(self, question: str, patient_id: str, history: list[dict[str, str]]) -> str | None:
        try:
            patient = self._store.fetch_one("patients", {"id": patient_id})
        except Exception:
            logger.warning("chat_patient_lookup_failed", patient_id=patient_id, exc_info=True)
            return None
        if patient is None:
            return None

        snippets = (
            self._retriever.search(question, patient_id) if question.strip() else self._retriever.recent(patient_id)
        )
        context = build_context(patient, snippets, self._clock().date())
        try:
            return self._llm.generate(SYSTEM_PROMPT.format(context=context), question, history=history)
        except LlmError as exc:
            METRICS.inc("toolgate_llm_error_total", labels={"kind": exc.kind})
            logger.warning("chat_generation_failed", kind=exc.kind, error=str(exc))
            name = f"{patient.get('first_name', '')} {patient.get('last_name', '')}".strip() or "this patient"
            return (
                "I'm having trouble generating a response right now. The record for "
                f"{name} is available, but I can't summarize it at the moment. Please try again shortly."
            )

    def reply(self, messages: Sequence[ChatMessage], patient_id: str | None = None) -> dict[str, Any]:
        if not messages:
            raise InvalidRequest("No messages provided", {"fields": ["messages"]})

        question = messages[-1].content
        history = [{"role": m.role, "content": m.content} for m in messages[:-1] if m.role != "system"]

        content = self._patient_reply(question, patient_id, history) if patient_id else None
        if content is None:
            content = self._intent_reply(question)

        message: dict[str, Any] = {"role": "assistant", "content": content}
        suggestions = self.suggest_tools(question)
        if suggestions:
            message["tool_calls"] = suggestions

        prompt_tokens = _estimate_tokens([m.content for m in messages])
        completion_tokens = _estimate_tokens([content])
        return {
            "id": f"chat-{uuid.uuid4().hex[:16]}",
            "object": "chat.completion",
            "created": int(self._clock().timestamp()),
            "model": MODEL_NAME,
            "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
            "requires_confirmation": any(s["requires_confirmation"] for s in suggestions),
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }
