# confirmations/models.py
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_serializer
from pydantic.alias_generators import to_camel


def utcnow_iso() -> str:
    """UTC timestamp in the `2024-05-01T10:00:00.123Z` form used by every record."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp into an aware UTC datetime; None if absent or unreadable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Record(BaseModel):
    # camelCase on the wire and on disk, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Confirmation(Record):
    token: str = Field(min_length=1)
    name: str = ""
    email: str = ""
    confirmed_at: Optional[str] = None
    participation_consent: bool = False
    photo_consent: bool = False
    ip_address: str = ""
    user_agent: str = ""
    # absent for confirmations made through untracked links
    unique_id: Optional[str] = None

    @model_serializer(mode="wrap")
    def _omit_missing_unique_id(self, handler):
        data = handler(self)
        if self.unique_id is None:
            data.pop("uniqueId", None)
            data.pop("unique_id", None)
        return data


class Link(Record):
    unique_id: str = Field(min_length=1)
    token: str = ""
    url: str = ""
    name: str = ""
    email: str = ""
    created_at: Optional[str] = None
    clicked: bool = False
    clicked_at: Optional[str] = None
    confirmed: bool = False
    confirmed_at: Optional[str] = None

    def mark_clicked(self) -> None:
        if not self.clicked:
            self.clicked = True
            self.clicked_at = utcnow_iso()

    def mark_confirmed(self) -> None:
        if not self.confirmed:
            self.confirmed = True
            self.confirmed_at = utcnow_iso()


class WebhookLog(Record):
    url: str = ""
    # HTTP status code of the delivery, or "failed" / "click-tracked"
    status: Union[int, str, None] = None
    payload: Any = None
    timestamp: Optional[str] = None


class WebhookSettings(Record):
    enabled: bool = False
    url: str = ""
    secret: str = ""

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.url)
