"""Domain records for AICs and subscriptions.

All records are frozen.  A subscription is assembled in stages, each stage
returning a new value:

    SubscriptionDraft (decoded)  --with_attribution()-->  SubscriptionDraft
    SubscriptionDraft (attributed)  --finalize()-->  Subscription
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

DEFAULT_AIC_EXPIRATION_DAYS = 30

STATUS_NOT_REPORTED = "not_reported"


def aic_expiration(created: datetime, days: int = DEFAULT_AIC_EXPIRATION_DAYS) -> datetime:
    return created + timedelta(days=days)


# ---------------------------------------------------------------------------
# AIC
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AttributionRecord:
    id: UUID
    cj_event_value: str
    flow_id: str
    created: datetime
    expires: datetime


@dataclass(frozen=True)
class AttributionArchiveRecord:
    """Snapshot of an AttributionRecord taken when it was retired."""

    id: UUID
    cj_event_value: str
    flow_id: str
    created: datetime
    expires: datetime
    archived_at: datetime | None = None

    def matches(self, aic: AttributionRecord) -> bool:
        return (
            self.id == aic.id
            and self.cj_event_value == aic.cj_event_value
            and self.flow_id == aic.flow_id
            and self.created == aic.created
            and self.expires == aic.expires
        )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StatusEntry:
    status: str
    t: datetime

    def to_json(self) -> dict[str, str]:
        return {"status": self.status, "t": self.t.isoformat()}


@dataclass(frozen=True)
class SubscriptionDraft:
    id: UUID
    flow_id: str
    subscription_id: str
    report_timestamp: datetime
    subscription_created: datetime
    fxa_uid: str
    quantity: int
    plan_id: str
    plan_currency: str
    plan_amount: int
    country: str | None = None
    aic_id: UUID | None = None
    aic_expires: datetime | None = None
    cj_event_value: str | None = None

    def with_attribution(self, aic: AttributionRecord) -> SubscriptionDraft:
        return replace(
            self,
            aic_id=aic.id,
            aic_expires=aic.expires,
            cj_event_value=aic.cj_event_value,
        )

    def finalize(self, status: str, at: datetime) -> Subscription:
        """Build the persistable Subscription with a single-entry status history."""
        return Subscription(
            **{f: getattr(self, f) for f in self.__dataclass_fields__},
            status=status,
            status_history=(StatusEntry(status=status, t=at),),
        )


@dataclass(frozen=True)
class Subscription:
    id: UUID
    flow_id: str
    subscription_id: str
    report_timestamp: datetime
    subscription_created: datetime
    fxa_uid: str
    quantity: int
    plan_id: str
    plan_currency: str
    plan_amount: int
    country: str | None
    aic_id: UUID | None
    aic_expires: datetime | None
    cj_event_value: str | None
    status: str | None
    status_history: tuple[StatusEntry, ...] | None

    def __post_init__(self) -> None:
        if self.status_history and self.status != self.status_history[-1].status:
            raise ValueError(
                f"status {self.status!r} does not match last status_history "
                f"entry {self.status_history[-1].status!r}"
            )

    def status_history_json(self) -> str | None:
        if self.status_history is None:
            return None
        return json.dumps([e.to_json() for e in self.status_history])


def parse_status_history(raw: Any) -> tuple[StatusEntry, ...] | None:
    """Rebuild StatusEntry values from the JSONB column (list of dicts or text)."""
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = json.loads(raw)
    return tuple(
        StatusEntry(status=e["status"], t=datetime.fromisoformat(e["t"]))
        for e in raw
    )
