"""Data model for scheduled actions, flow templates and recurrence rules.

Field names mirror the persisted JSON documents (camelCase keys) via
``to_dict`` / ``from_dict`` so files written by earlier versions load as-is.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the ``Z`` suffix and naive strings (treated as UTC).
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def new_action_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Action:
    broadcast_id: str
    at: datetime
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_action_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "broadcastId": self.broadcast_id,
            "at": to_iso(self.at),
            "type": self.type,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        return cls(
            id=str(data["id"]),
            broadcast_id=str(data["broadcastId"]),
            at=parse_iso(data["at"]),
            type=data["type"],
            payload=dict(data.get("payload") or {}),
        )


@dataclass
class FlowStep:
    offset_sec: int
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"offsetSec": self.offset_sec, "type": self.type, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowStep":
        return cls(
            offset_sec=int(data.get("offsetSec", 0)),
            type=data["type"],
            payload=dict(data.get("payload") or {}),
        )


@dataclass
class FlowTemplate:
    steps: List[FlowStep] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    base_at: Optional[datetime] = None

    def has_start(self) -> bool:
        return any(step.type == "start" for step in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "updatedAt": to_iso(self.updated_at) if self.updated_at else None,
            "steps": [step.to_dict() for step in self.steps],
        }
        if self.base_at:
            data["baseAt"] = to_iso(self.base_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowTemplate":
        updated = data.get("updatedAt")
        base = data.get("baseAt")
        return cls(
            steps=[FlowStep.from_dict(s) for s in data.get("steps") or []],
            updated_at=parse_iso(updated) if updated else None,
            base_at=parse_iso(base) if base else None,
        )


@dataclass
class RecurrenceMeta:
    title: str = ""
    description: str = ""
    privacy: str = "public"
    latency: str = "normal"
    thumb_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "privacy": self.privacy,
            "latency": self.latency,
            "thumbPath": self.thumb_path,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RecurrenceMeta":
        data = data or {}
        return cls(
            title=data.get("title") or "",
            description=data.get("description") or "",
            privacy=data.get("privacy") or "public",
            latency=data.get("latency") or "normal",
            thumb_path=data.get("thumbPath"),
        )


@dataclass
class RecurrenceRule:
    recurring: bool
    days: List[int]
    base_time: datetime
    meta: RecurrenceMeta = field(default_factory=RecurrenceMeta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recurring": self.recurring,
            "days": list(self.days),
            "baseTime": to_iso(self.base_time),
            "meta": self.meta.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrenceRule":
        return cls(
            recurring=bool(data.get("recurring")),
            days=sorted({int(d) for d in data.get("days") or [] if 0 <= int(d) <= 6}),
            base_time=parse_iso(data["baseTime"]),
            meta=RecurrenceMeta.from_dict(data.get("meta")),
        )


@dataclass
class BroadcastInfo:
    """Platform-owned broadcast fields as returned by list/create calls."""
    id: str
    title: str = ""
    time: Optional[str] = None
    privacy: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "time": self.time,
            "privacy": self.privacy,
            "status": self.status,
        }
