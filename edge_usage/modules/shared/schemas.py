from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel


class DashboardModel(BaseModel):
    """Base for API payloads and stored records: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_serializer("*", when_used="json")
    def serialize_datetime_as_utc(value, _info):
        # Naive values are UTC already (core/utils/time.py).
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc).replace(tzinfo=None)
            return value.isoformat() + "Z"
        return value

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
