"""Counterparty identity resolution for legacy and external references.

Matching is deliberately simple and ordered:

1. Exact tax ID (case-insensitive), when the reference carries a real one.
2. Case-insensitive containment of the reference name in a candidate name.
3. Unresolved.

The first candidate matching at a step wins, in the order the caller
supplied them. There is no scoring: two candidates sharing a substring
resolve to whichever comes first.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, cast

import yaml
from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from collections.abc import Iterable

    from recon.models import CounterpartyCandidate


class MatchedBy(StrEnum):
    TAX_ID = "tax_id"
    NAME = "name"


class ExternalRef(BaseModel):
    """Weak identifiers a legacy record carries for its counterparty."""

    model_config = ConfigDict(frozen=True)

    tax_id: str | None = None
    name: str | None = None


class Resolved(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["resolved"] = "resolved"
    candidate_id: str
    matched_by: MatchedBy


class Unresolved(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["unresolved"] = "unresolved"
    reason: str = "no candidate matched"


Resolution = Resolved | Unresolved


@lru_cache(maxsize=1)
def _load_placeholder_policy() -> dict[str, Any]:
    """Load placeholder sentinels from YAML file (cached)."""
    policy_path = Path(__file__).parent / "placeholders.yaml"
    result = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    return cast(dict[str, Any], result)


def _usable(value: str | None, field: str) -> str | None:
    """Return the stripped value, or None when it is missing or a placeholder."""
    if value is None:
        return None
    stripped = value.strip()
    policy = cast(dict[str, Any], _load_placeholder_policy()[field])
    sentinels = {str(s).casefold() for s in policy.get("sentinels", [])}
    if len(stripped) < int(policy["min_length"]):
        return None
    if stripped.casefold() in sentinels:
        return None
    return stripped


def is_placeholder_tax_id(tax_id: str | None) -> bool:
    return _usable(tax_id, "tax_id") is None


def is_placeholder_name(name: str | None) -> bool:
    return _usable(name, "name") is None


def resolve(
    ref: ExternalRef, candidates: Iterable[CounterpartyCandidate]
) -> Resolution:
    """Resolve an external reference to a canonical counterparty.

    Args:
        ref: Tax ID and/or free-text name from the legacy record
        candidates: Eligible counterparties, in tie-break order

    Returns:
        Resolved with the winning candidate id, or Unresolved
    """
    pool = list(candidates)
    tax_id = _usable(ref.tax_id, "tax_id")
    name = _usable(ref.name, "name")

    if tax_id is None and name is None:
        return Unresolved(reason="no usable identifiers")

    if tax_id is not None:
        wanted = tax_id.casefold()
        for candidate in pool:
            if candidate.tax_id and candidate.tax_id.strip().casefold() == wanted:
                return Resolved(candidate_id=candidate.id, matched_by=MatchedBy.TAX_ID)

    if name is not None:
        needle = name.casefold()
        for candidate in pool:
            if needle in candidate.name.casefold():
                return Resolved(candidate_id=candidate.id, matched_by=MatchedBy.NAME)

    return Unresolved()
