"""
Kayako case submission.

One case per call: `KayakoTicketClient.submit` remembers the sessions it has
already submitted and turns repeat calls into no-ops. HTTP failures and non-2xx
responses are logged and reported in the result, never raised.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from html import escape
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
import msgspec
import structlog

from src.supportline.summarizer import Priority, TicketDraft

logger = structlog.get_logger(__name__)

PRIORITY_IDS = {
    Priority.HIGH: "3",
    Priority.MEDIUM: "2",
    Priority.LOW: "1",
}
DEFAULT_PRIORITY_ID = "2"

_BLUE = "#f6f8fa; border-left: 4px solid #0366d6"
_GREEN = "#e6ffed; border-left: 4px solid #28a745"
_YELLOW = "#fff8c5; border-left: 4px solid #f9c513"
_RED = "#ffebe9; border-left: 4px solid #d73a49"

PRIORITY_COLORS = {
    Priority.HIGH: _RED,
    Priority.MEDIUM: _YELLOW,
    Priority.LOW: _GREEN,
}

_encoder = msgspec.json.Encoder()


class SubmissionStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class TicketSubmission:
    session_id: str
    status: SubmissionStatus
    status_code: Optional[int] = None
    case_id: Optional[Any] = None


def _section(title: str, body: str, colors: str = _BLUE) -> str:
    return (
        f'<div style="margin-bottom: 20px; background-color: {colors}; padding: 15px; border-radius: 4px;">'
        f"<strong>{title}</strong><br>"
        f"{body}"
        "</div>"
    )


def _paragraph(text: str) -> str:
    return f'<p style="margin-top: 10px; margin-bottom: 0;">{escape(text)}</p>'


def _list(items: Iterable[str]) -> str:
    rows = "".join(f"<li>{escape(item)}</li>" for item in items)
    return f'<ul style="margin-top: 10px; margin-bottom: 0;">{rows}</ul>'


def render_ticket_html(draft: TicketDraft) -> str:
    parts: List[str] = [
        _section("SUBJECT", _paragraph(draft.subject)),
        _section("CUSTOMER EMAIL", _paragraph(draft.email or "Not provided")),
        _section("SUMMARY", _paragraph(draft.summary)),
        _section(
            f"PRIORITY: {draft.priority.value}",
            _paragraph(draft.priority.description),
            PRIORITY_COLORS[draft.priority],
        ),
    ]

    if draft.requires_followup:
        parts.append(_section("FOLLOW-UP REQUIRED", _paragraph(f"Reason: {draft.followup_reason}"), _YELLOW))
    else:
        parts.append(_section("NO FOLLOW-UP NEEDED", _paragraph(draft.followup_reason), _GREEN))

    if draft.topic_keywords:
        chips = " ".join(
            '<span style="display: inline-block; background-color: #e1e4e8; padding: 2px 8px; '
            f'margin: 2px; border-radius: 12px;">{escape(k)}</span>'
            for k in draft.topic_keywords
        )
        parts.append(_section("KEY TOPICS", f'<p style="margin-top: 10px; margin-bottom: 0;">{chips}</p>'))

    if draft.resolved_questions:
        parts.append(_section("RESOLVED QUESTIONS", _list(draft.resolved_questions), _GREEN))
    if draft.unresolved_questions:
        parts.append(_section("UNRESOLVED QUESTIONS", _list(draft.unresolved_questions), _RED))

    if draft.transcript_entries:
        lines = "<br>".join(escape(entry.render()) for entry in draft.transcript_entries)
        parts.append(
            '<div style="margin-bottom: 20px;"><strong>CONVERSATION LOG</strong><br>'
            f'<div style="background: #f5f5f5; padding: 15px; border-radius: 4px; margin: 10px 0;">{lines}</div>'
            "</div>"
        )

    if draft.parsed_transcript:
        messages = "".join(
            '<div style="margin-bottom: 10px; padding: 8px; '
            f"background-color: {'#e3f2fd' if m.role == 'agent' else '#f3e5f5'}; border-radius: 4px;\">"
            f"<strong>{'Agent' if m.role == 'agent' else 'Customer'}:</strong> {escape(m.text)}"
            "</div>"
            for m in draft.parsed_transcript
        )
        parts.append(
            '<div style="margin-bottom: 20px;"><strong>CALL TRANSCRIPT</strong><br>'
            f'<div style="background: #f5f5f5; padding: 15px; border-radius: 4px; margin: 10px 0;">{messages}</div>'
            "</div>"
        )

    return '<div style="font-family: Arial, sans-serif; line-height: 1.6;">' + "".join(parts) + "</div>"


def build_case_payload(draft: TicketDraft, config: Any) -> Dict[str, Any]:
    return {
        "field_values": {"product": config.kayako_product_field},
        "status_id": "1",
        "attachment_file_ids": [],
        "tags": config.ticket_tags,
        "type_id": 7,
        "channel": "MAIL",
        "subject": draft.subject,
        "contents": render_ticket_html(draft),
        "assigned_agent_id": config.kayako_default_agent_id,
        "assigned_team_id": config.kayako_default_team_id,
        # Kayako requires an existing requester; the caller email is shown in the contents.
        "requester_id": config.kayako_default_agent_id,
        "channel_id": "1",
        "priority_id": PRIORITY_IDS.get(draft.priority, DEFAULT_PRIORITY_ID),
        "channel_options": {"cc": [], "html": True},
    }


class KayakoTicketClient:
    def __init__(
        self,
        config: Any,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
    ):
        self.config = config
        self._transport = transport
        self._timeout = timeout
        self._submitted: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def cases_url(self) -> str:
        return f"{self.config.kayako_api_url}/cases"

    def _claim(self, session_id: str) -> bool:
        with self._lock:
            if session_id in self._submitted:
                return False
            self._submitted.add(session_id)
            return True

    async def submit(self, session_id: str, draft: TicketDraft) -> TicketSubmission:
        if not self._claim(session_id):
            logger.info("Ticket already submitted for session", session_id=session_id)
            return TicketSubmission(session_id=session_id, status=SubmissionStatus.DUPLICATE)

        payload = build_case_payload(draft, self.config)
        log = logger.bind(session_id=session_id, subject=draft.subject, priority=draft.priority.value)

        try:
            async with httpx.AsyncClient(
                auth=(self.config.kayako_username, self.config.kayako_password),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.cases_url,
                    content=_encoder.encode(payload),
                    headers={"Content-Type": "application/json; charset=UTF-8"},
                )
        except httpx.HTTPError as e:
            log.error("Kayako request failed", error=str(e))
            return TicketSubmission(session_id=session_id, status=SubmissionStatus.FAILED)

        if not response.is_success:
            log.error(
                "Kayako rejected ticket",
                status_code=response.status_code,
                response=response.text[:500],
            )
            return TicketSubmission(
                session_id=session_id,
                status=SubmissionStatus.REJECTED,
                status_code=response.status_code,
            )

        case_id = None
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("data"), dict):
                case_id = body["data"].get("id")
        except ValueError:
            pass

        log.info("Kayako ticket created", status_code=response.status_code, case_id=case_id)
        return TicketSubmission(
            session_id=session_id,
            status=SubmissionStatus.CREATED,
            status_code=response.status_code,
            case_id=case_id,
        )
