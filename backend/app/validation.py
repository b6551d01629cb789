from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


def _blank_to_none(v):
    if v is None:
        return v
    s = str(v).strip()
    return s or None


# Canonical codes mirror the check constraints in `backend/db/migrations/001_inventory_engine.sql`.
ItemType = Annotated[Literal["COUNTABLE", "MEASURABLE"], BeforeValidator(_to_upper_str)]
TransferDirection = Annotated[Literal["outgoing", "incoming", "both"], BeforeValidator(_to_lower_str)]


# Location and item ids are free-form keys chosen by the company (warehouse codes, SKUs, uuids).
# Keep them trimmed and printable so they are stable identifiers.
EntityId = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$"),
]


# Free-text labels (category, unit). Blank means unset, so exports read back as None.
OptionalLabel = Annotated[Optional[str], BeforeValidator(_blank_to_none)]
