from __future__ import annotations

from pydantic import AwareDatetime, BaseModel, ConfigDict, field_validator


class TariffPoint(BaseModel):
    # Price is currency per kWh and may be negative.
    timestamp: AwareDatetime
    price: float

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("timestamp")
    @classmethod
    def _validate_hour_aligned(cls, value: AwareDatetime) -> AwareDatetime:
        if value.minute or value.second or value.microsecond:
            raise ValueError("tariff timestamp must be aligned to the hour")
        return value
