"""
Human-in-the-loop protocol.

A ``humanInput`` node produces a ``HumanInputRequest``; the executor stores it
on the suspended execution and hands the resume token to whoever must
answer. The answer comes back through ``WorkflowExecutor.resume`` as a
``HumanDecision``.
"""

import secrets
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field


def new_resume_token() -> str:
    """Opaque, unguessable token that allows exactly one resumption."""
    return secrets.token_urlsafe(24)


class HumanInputRequest(BaseModel):
    """Pending prompt persisted with a suspended execution."""

    node_id: str
    prompt: str
    assignee: str | None = None
    options: list[str] = Field(default_factory=list)
    resume_token: str
    requested_at: datetime
    deadline: datetime

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        node_id: str,
        prompt: str,
        now: datetime,
        timeout_hours: float,
        assignee: str | None = None,
        options: list[str] | None = None,
    ) -> "HumanInputRequest":
        return cls(
            node_id=node_id,
            prompt=prompt,
            assignee=assignee,
            options=options or [],
            resume_token=new_resume_token(),
            requested_at=now,
            deadline=now + timedelta(hours=timeout_hours),
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.deadline

    def format_for_display(self) -> str:
        parts = [f"Prompt: {self.prompt}"]
        if self.assignee:
            parts.append(f"Assigned to: {self.assignee}")
        if self.options:
            parts.append(f"Options: {', '.join(self.options)}")
        parts.append(f"Respond before: {self.deadline.isoformat()}")
        return "\n".join(parts)


class HumanDecision(BaseModel):
    """A human's answer, passed back when resuming."""

    decision: Any
    responder: str | None = None
    comment: str = ""
    responded_at: datetime | None = None

    def to_output(self) -> dict[str, Any]:
        return {
            "decision": self.decision,
            "responder": self.responder,
            "comment": self.comment,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }
