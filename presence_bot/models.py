from typing import Any, Literal

from pydantic import BaseModel, model_validator

FetchResult = Literal["online", "offline", "unknown"]

TRANSITION_ONLINE = "online"
TRANSITION_OFFLINE = "offline"

STATUS_SCHEMA_VERSION = 2


class EntityStatus(BaseModel):
    status: Literal["online", "offline"]
    online_since: float | None = None
    notified_users: list[int] = []
    last_notification_time: float | None = None
    schema_version: int = STATUS_SCHEMA_VERSION

    @model_validator(mode="after")
    def _online_since_matches_status(self) -> "EntityStatus":
        if self.status == "offline":
            self.online_since = None
        elif self.online_since is None:
            raise ValueError("online status requires online_since")
        return self

    @classmethod
    def online(cls, since: float) -> "EntityStatus":
        return cls(status="online", online_since=since)

    @classmethod
    def offline(cls) -> "EntityStatus":
        return cls(status="offline")


class ConversationState(BaseModel):
    action: str
    data: dict[str, Any] | None = None
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


class SubscriptionList(BaseModel):
    subscriber: int
    entities: list[str]


class SubscriptionChange(BaseModel):
    subscriber: int
    entity: str
    subscribed: bool


class CycleStats(BaseModel):
    started_at: float
    outcome: Literal[
        "running", "completed", "aborted", "failed", "lease_denied"
    ] = "running"
    queued: int = 0
    checked: int = 0
    transitions: int = 0
    notifications_sent: int = 0
    skipped_unknown: int = 0
    errors: int = 0
    duration: float = 0.0
