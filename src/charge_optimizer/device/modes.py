from __future__ import annotations

from collections.abc import Iterable
from enum import Enum, StrEnum
from typing import Literal, assert_never

CHARGE_ALLOWED = "charge_allowed"
DISCHARGE_ALLOWED = "discharge_allowed"

HoldMode = Literal["standby", "zero"]


class Action(StrEnum):
    CHARGE = "charge"
    DISCHARGE_ONLY = "discharge_only"
    HOLD = "hold"
    SAFE_FALLBACK = "safe_fallback"


class DeviceMode(Enum):
    """HomeWizard battery group modes as (vendor mode, permissions).

    ``None`` permissions means the mode is sent without a permission list.
    """

    # Charge to 100% regardless of household consumption.
    FULL_CHARGE = ("to_full", None)
    # Keep the household at zero grid exchange, charging and discharging.
    ZERO = ("zero", (CHARGE_ALLOWED, DISCHARGE_ALLOWED))
    ZERO_CHARGE_ONLY = ("zero", (CHARGE_ALLOWED,))
    ZERO_DISCHARGE_ONLY = ("zero", (DISCHARGE_ALLOWED,))
    # Zero mode with both directions disallowed.
    ZERO_NO_PERMISSIONS = ("zero", ())
    # Legacy mode: neither charge nor discharge.
    STANDBY = ("standby", None)

    @property
    def vendor_mode(self) -> str:
        return self.value[0]

    @property
    def permissions(self) -> tuple[str, ...] | None:
        return self.value[1]

    def payload(self) -> dict[str, object]:
        body: dict[str, object] = {"mode": self.vendor_mode}
        if self.permissions is not None:
            body["permissions"] = list(self.permissions)
        return body

    @classmethod
    def from_vendor(
        cls, mode: str | None, permissions: Iterable[str] | None = None
    ) -> DeviceMode | None:
        """Map a mode reported by the device back onto the vocabulary.

        Zero mode without a permission list is the device default, which
        allows both directions. Unknown combinations return ``None``.
        """
        if mode is None:
            return None
        if mode != "zero":
            for member in cls:
                if member.vendor_mode == mode and member.permissions is None:
                    return member
            return None
        if permissions is None:
            return cls.ZERO
        wanted = frozenset(permissions)
        for member in cls:
            if member.vendor_mode == "zero" and frozenset(member.permissions or ()) == wanted:
                return member
        return None


def translate_action(action: Action, *, hold_mode: HoldMode = "standby") -> DeviceMode:
    match action:
        case Action.CHARGE:
            return DeviceMode.FULL_CHARGE
        case Action.DISCHARGE_ONLY:
            return DeviceMode.ZERO_DISCHARGE_ONLY
        case Action.HOLD:
            return DeviceMode.STANDBY if hold_mode == "standby" else DeviceMode.ZERO
        case Action.SAFE_FALLBACK:
            return DeviceMode.ZERO_NO_PERMISSIONS
        case _:
            assert_never(action)
