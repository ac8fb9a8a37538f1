"""Typed payloads for the CRM deals API.

DealProperties is the allow-list of deal properties this engine ever
writes: dealstage, pipeline, amount and closedate. Nothing else is sent.

Wire formats:
- amount: decimal string ("250000.00")
- closedate: epoch milliseconds at midnight UTC, as a string; reads also
  accept ISO-8601 dates and datetimes
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum

from pydantic import BaseModel, ConfigDict

READ_PROPERTIES = ("dealstage", "amount", "hs_lastmodifieddate", "closedate", "pipeline")


def parse_amount(raw: str | None) -> Decimal | None:
    if raw is None or raw == "":
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return None


def parse_close_date(raw: str | None) -> date | None:
    if not raw:
        return None
    raw = str(raw)
    if raw.isdigit():
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc).date()
    if "T" in raw:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    return date.fromisoformat(raw)


def format_close_date(value: date) -> str:
    midnight = datetime.combine(value, time.min, tzinfo=timezone.utc)
    return str(int(midnight.timestamp() * 1000))


class DealProperties(BaseModel):
    """Deal properties written by the engine. Unset fields are not sent."""

    model_config = ConfigDict(extra="forbid")

    dealstage: str | None = None
    pipeline: str | None = None
    amount: Decimal | None = None
    closedate: date | None = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def to_payload(self) -> dict:
        """Request body for PATCH /crm/v3/objects/deals/{id}."""
        properties: dict[str, str] = {}
        if self.dealstage is not None:
            properties["dealstage"] = self.dealstage
        if self.pipeline is not None:
            properties["pipeline"] = self.pipeline
        if self.amount is not None:
            properties["amount"] = str(self.amount)
        if self.closedate is not None:
            properties["closedate"] = format_close_date(self.closedate)
        return {"properties": properties}


class DealSnapshot(BaseModel):
    """A deal as read back from the CRM."""

    id: str
    dealstage: str | None = None
    pipeline: str | None = None
    amount: Decimal | None = None
    closedate: date | None = None
    hs_lastmodifieddate: str | None = None

    @classmethod
    def from_api(cls, data: dict) -> DealSnapshot:
        props = data.get("properties") or {}
        return cls(
            id=str(data.get("id", "")),
            dealstage=props.get("dealstage") or None,
            pipeline=props.get("pipeline") or None,
            amount=parse_amount(props.get("amount")),
            closedate=parse_close_date(props.get("closedate")),
            hs_lastmodifieddate=props.get("hs_lastmodifieddate"),
        )


class CrmStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


class CrmResult(BaseModel):
    """Outcome of one CRM call. Transport failures are values, not exceptions."""

    status: CrmStatus
    deal: DealSnapshot | None = None
    status_code: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == CrmStatus.OK
