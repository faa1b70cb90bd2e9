"""Pydantic models for Defender ATP alerts and API envelopes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class AlertComment(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    comment: str | None = None
    created_by: str | None = Field(default=None, alias="createdBy")
    created_time: str | None = Field(default=None, alias="createdTime")


class Alert(BaseModel):
    """A Microsoft Defender ATP alert.

    Treated as an opaque record: every field is optional and fields the
    API adds later are kept (``extra="allow"``) so they reach the output
    untouched.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str | None = None
    title: str | None = None
    description: str | None = None
    alert_creation_time: str | None = Field(default=None, alias="alertCreationTime")
    last_event_time: str | None = Field(default=None, alias="lastEventTime")
    first_event_time: str | None = Field(default=None, alias="firstEventTime")
    last_update_time: str | None = Field(default=None, alias="lastUpdateTime")
    resolved_time: str | None = Field(default=None, alias="resolvedTime")
    incident_id: int | None = Field(default=None, alias="incidentId")
    investigation_id: int | None = Field(default=None, alias="investigationId")
    investigation_state: str | None = Field(default=None, alias="investigationState")
    assigned_to: str | None = Field(default=None, alias="assignedTo")
    severity: str | None = None
    status: str | None = None
    classification: str | None = None
    determination: str | None = None
    category: str | None = None
    detection_source: str | None = Field(default=None, alias="detectionSource")
    threat_family_name: str | None = Field(default=None, alias="threatFamilyName")
    machine_id: str | None = Field(default=None, alias="machineId")
    comments: list[AlertComment] = Field(default_factory=list)

    def to_json_dict(self) -> dict:
        """Wire-shaped dict (API field names, extras included)."""
        return self.model_dump(mode="json", by_alias=True)


class AlertPage(BaseModel):
    """One page of the List Alerts endpoint."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    odata_context: str = Field(default="", alias="@odata.context")
    next_link: str | None = Field(default=None, alias="@odata.nextLink")
    value: list[Alert] = Field(default_factory=list)


class AlertRequestParams(BaseModel):
    """Query parameters of the SIEM-style alert fetch endpoint.

    ``ago`` (an ISO-8601 duration such as ``PT12H``) is mutually exclusive
    with the since/until bounds.
    """

    since_time_utc: datetime | None = None
    until_time_utc: datetime | None = None
    ago: str = ""
    limit: int = Field(default=0, ge=0)
    machine_groups: list[str] = Field(default_factory=list)
    device_created_machine_tags: str = ""
    cloud_created_machine_tags: list[str] = Field(default_factory=list)

    def to_query(self) -> list[tuple[str, str]]:
        """Validate and render as (name, value) pairs, repeating list params."""
        if self.ago:
            if self.since_time_utc or self.until_time_utc:
                raise ValueError(
                    "ago and since/until are mutually exclusive, provide only one"
                )
            parse_iso_duration(self.ago)

        query: list[tuple[str, str]] = []
        if self.since_time_utc:
            query.append(("sinceTimeUtc", _format_query_time(self.since_time_utc)))
        if self.until_time_utc:
            query.append(("untilTimeUtc", _format_query_time(self.until_time_utc)))
        if self.ago:
            query.append(("ago", self.ago))
        if self.limit:
            query.append(("limit", str(self.limit)))
        query.extend(("machinegroups", g) for g in self.machine_groups)
        if self.device_created_machine_tags:
            query.append(("DeviceCreatedMachineTags", self.device_created_machine_tags))
        query.extend(("CloudCreatedMachineTags", t) for t in self.cloud_created_machine_tags)
        return query


_DURATION = TypeAdapter(timedelta)


def parse_iso_duration(value: str) -> timedelta:
    """Parse an ISO-8601 duration (``P1D``, ``PT30M``). Raises ValueError."""
    if not value.upper().startswith("P"):
        raise ValueError(f"not an ISO-8601 duration: {value!r}")
    try:
        return _DURATION.validate_python(value)
    except ValidationError as e:
        raise ValueError(f"not an ISO-8601 duration: {value!r}") from e


def _format_query_time(value: datetime) -> str:
    """``YYYY-MM-DDTHH:MM:SS[.fff]`` in UTC, milliseconds truncated."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    frac = f"{value.microsecond // 1000:03d}".rstrip("0")
    base = value.strftime("%Y-%m-%dT%H:%M:%S")
    return f"{base}.{frac}" if frac else base
