"""Data types shared by the calendar subsystem."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as an ISO-8601 UTC string (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if len(value) == 10:
        # date-only value (all-day events)
        return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class TokenSet:
    """OAuth credentials returned by a provider."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None  # unix timestamp


@dataclass
class CalendarIntegration:
    id: int
    user_id: int
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    token_expiry: Optional[float] = None
    calendar_id: Optional[str] = None
    enabled: bool = True
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def to_public_dict(self) -> dict:
        """Integration view safe to send to clients (no tokens)."""
        return {
            "id": self.id,
            "provider": self.provider,
            "enabled": self.enabled,
            "calendarId": self.calendar_id,
            "createdAt": self.created_at,
        }


@dataclass
class ProviderEvent:
    """An event as fetched from a provider, before it is stored."""
    external_id: str
    title: str
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    all_day: bool = False
    location: Optional[str] = None
    url: Optional[str] = None


@dataclass
class CalendarEvent:
    id: int
    integration_id: int
    external_id: str
    title: str
    user_id: Optional[int] = None
    description: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    all_day: bool = False
    location: Optional[str] = None
    url: Optional[str] = None
    last_synced: Optional[float] = None
    provider: Optional[str] = None

    def to_api_dict(self) -> dict:
        return {
            "id": str(self.id),
            "title": self.title,
            "description": self.description,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "allDay": self.all_day,
            "location": self.location,
            "provider": self.provider,
            "externalId": self.external_id,
            "url": self.url,
        }


@dataclass
class ExtractedTask:
    title: str
    description: str = ""
    due_date: Optional[str] = None
    category: str = "work"
    priority: str = "medium"
    estimated_minutes: Optional[int] = None
    location: Optional[str] = None
    people: list[str] = field(default_factory=list)
    recurring: bool = False
    recurring_pattern: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "dueDate": self.due_date,
            "category": self.category,
            "priority": self.priority,
            "estimatedMinutes": self.estimated_minutes,
            "location": self.location,
            "people": list(self.people),
            "recurring": self.recurring,
            "recurringPattern": self.recurring_pattern,
        }
