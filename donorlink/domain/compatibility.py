# SPDX-License-Identifier: Apache-2.0

"""
Red cell donor/recipient compatibility.

O- is the universal donor and AB+ the universal recipient. The recipient
table is the source of truth; the donor table is derived from it so the
two can never disagree.
"""

from typing import Any, Dict, List, Tuple

from ..exceptions import InvalidBloodTypeError

UNIVERSAL_DONOR = "O-"
UNIVERSAL_RECIPIENT = "AB+"

BLOOD_TYPES: Tuple[str, ...] = ("O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+")

# Recipient type -> donor types it can receive from, exact match first.
DONORS_BY_RECIPIENT: Dict[str, Tuple[str, ...]] = {
    "O-": ("O-",),
    "O+": ("O+", "O-"),
    "A-": ("A-", "O-"),
    "A+": ("A+", "A-", "O+", "O-"),
    "B-": ("B-", "O-"),
    "B+": ("B+", "B-", "O+", "O-"),
    "AB-": ("AB-", "A-", "B-", "O-"),
    "AB+": ("AB+", "AB-", "A+", "A-", "B+", "B-", "O+", "O-"),
}

RECIPIENTS_BY_DONOR: Dict[str, Tuple[str, ...]] = {
    donor: tuple(
        recipient for recipient in BLOOD_TYPES
        if donor in DONORS_BY_RECIPIENT[recipient]
    )
    for donor in BLOOD_TYPES
}

_ALIASES = {
    "POS": "+",
    "+VE": "+",
    "NEG": "-",
    "-VE": "-",
}


def normalize_blood_type(blood_type: Any) -> str:
    """
    Canonicalise a blood type string (``" ab+ "`` -> ``"AB+"``, ``"O NEG"`` -> ``"O-"``).

    Raises:
        InvalidBloodTypeError: If the value is not a known blood type
    """
    if blood_type is None:
        raise InvalidBloodTypeError(blood_type)

    value = "".join(str(getattr(blood_type, "value", blood_type)).upper().split())
    for alias, sign in _ALIASES.items():
        if value.endswith(alias):
            value = value[: -len(alias)] + sign
            break

    if value not in DONORS_BY_RECIPIENT:
        raise InvalidBloodTypeError(blood_type)
    return value


def compatible_donor_types(recipient_type: Any) -> List[str]:
    """
    Donor blood types that can give to ``recipient_type``, exact match first.

    Raises:
        InvalidBloodTypeError: For unknown blood types
    """
    return list(DONORS_BY_RECIPIENT[normalize_blood_type(recipient_type)])


def compatible_recipient_types(donor_type: Any) -> List[str]:
    """
    Recipient blood types that ``donor_type`` can give to.

    Raises:
        InvalidBloodTypeError: For unknown blood types
    """
    return list(RECIPIENTS_BY_DONOR[normalize_blood_type(donor_type)])


def is_compatible(donor_type: Any, recipient_type: Any) -> bool:
    """Check whether a donor type can give to a recipient type."""
    return normalize_blood_type(donor_type) in DONORS_BY_RECIPIENT[normalize_blood_type(recipient_type)]
