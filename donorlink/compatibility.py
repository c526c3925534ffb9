"""
Blood type compatibility rules.

The table maps each donor type to the recipient types it may be given to.
O- is the universal donor, AB+ the universal recipient.
"""

import re
from enum import StrEnum

from donorlink.errors import ValidationError


class BloodType(StrEnum):
    O_NEG = "O-"
    O_POS = "O+"
    A_NEG = "A-"
    A_POS = "A+"
    B_NEG = "B-"
    B_POS = "B+"
    AB_NEG = "AB-"
    AB_POS = "AB+"


COMPATIBILITY: dict[BloodType, frozenset[BloodType]] = {
    BloodType.O_NEG: frozenset(BloodType),
    BloodType.O_POS: frozenset(
        {BloodType.O_POS, BloodType.A_POS, BloodType.B_POS, BloodType.AB_POS}
    ),
    BloodType.A_NEG: frozenset(
        {BloodType.A_NEG, BloodType.A_POS, BloodType.AB_NEG, BloodType.AB_POS}
    ),
    BloodType.A_POS: frozenset({BloodType.A_POS, BloodType.AB_POS}),
    BloodType.B_NEG: frozenset(
        {BloodType.B_NEG, BloodType.B_POS, BloodType.AB_NEG, BloodType.AB_POS}
    ),
    BloodType.B_POS: frozenset({BloodType.B_POS, BloodType.AB_POS}),
    BloodType.AB_NEG: frozenset({BloodType.AB_NEG, BloodType.AB_POS}),
    BloodType.AB_POS: frozenset({BloodType.AB_POS}),
}

_SPELLED_SIGNS = (
    ("+VE", "+"),
    ("-VE", "-"),
    ("POS", "+"),
    ("NEG", "-"),
)


def parse_blood_type(value: object) -> BloodType:
    """
    Normalize user input such as "ab+", " O NEG " or "B+ve" into a BloodType.
    Raises ValidationError for anything outside the eight standard types.
    """
    if isinstance(value, BloodType):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"Unknown blood type: {value!r}")

    text = re.sub(r"\s+", "", value.upper())
    for spelled, sign in _SPELLED_SIGNS:
        if text.endswith(spelled):
            text = text[: -len(spelled)] + sign
            break

    try:
        return BloodType(text)
    except ValueError:
        raise ValidationError(f"Unknown blood type: {value!r}") from None


def can_donate(donor_type: object, requested_type: object) -> bool:
    """Return True if donor_type blood may be given to a requested_type recipient."""
    try:
        donor = parse_blood_type(donor_type)
        recipient = parse_blood_type(requested_type)
    except ValidationError:
        return False
    return recipient in COMPATIBILITY[donor]


def compatible_recipient_types(donor_type: object) -> list[BloodType]:
    try:
        donor = parse_blood_type(donor_type)
    except ValidationError:
        return []
    return [t for t in BloodType if t in COMPATIBILITY[donor]]


def compatible_donor_types(requested_type: object) -> list[BloodType]:
    try:
        recipient = parse_blood_type(requested_type)
    except ValidationError:
        return []
    return [t for t in BloodType if recipient in COMPATIBILITY[t]]
