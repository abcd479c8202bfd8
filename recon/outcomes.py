"""Per-item outcomes and the reports they are folded into."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


class Outcome(StrEnum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(StrEnum):
    DUPLICATE = "duplicate"
    MAPPING_MISS = "mapping_miss"
    NO_PARENT_COUNTERPARTY = "no_parent_counterparty"
    UNRESOLVED_IDENTITY = "unresolved_identity"


class ItemResult(BaseModel):
    item_id: str
    outcome: Outcome
    reason: SkipReason | None = None
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, item_id: str, **detail: Any) -> ItemResult:  # noqa: ANN401
        return cls(item_id=item_id, outcome=Outcome.OK, detail=detail)

    @classmethod
    def skipped(
        cls,
        item_id: str,
        reason: SkipReason,
        **detail: Any,  # noqa: ANN401
    ) -> ItemResult:
        return cls(item_id=item_id, outcome=Outcome.SKIPPED, reason=reason, detail=detail)

    @classmethod
    def failed(cls, item_id: str, error: str, **detail: Any) -> ItemResult:  # noqa: ANN401
        return cls(item_id=item_id, outcome=Outcome.FAILED, error=error, detail=detail)


class OperationReport(BaseModel):
    """Outcome of one backfill operation, item by item."""

    operation: str
    dry_run: bool = False
    items: list[ItemResult] = Field(default_factory=list)

    def add(self, item: ItemResult) -> ItemResult:
        self.items.append(item)
        return item

    def with_outcome(self, outcome: Outcome) -> list[ItemResult]:
        return [item for item in self.items if item.outcome is outcome]

    def skipped_for(self, reason: SkipReason) -> list[ItemResult]:
        return [item for item in self.items if item.reason is reason]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ok_count(self) -> int:
        return len(self.with_outcome(Outcome.OK))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def skipped_count(self) -> int:
        return len(self.with_outcome(Outcome.SKIPPED))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed_count(self) -> int:
        return len(self.with_outcome(Outcome.FAILED))

    @property
    def success(self) -> bool:
        return self.failed_count == 0


class SyncReport(OperationReport):
    """Row sync for one table; ok items carry the applied action."""

    table: str

    def _action_count(self, action: str) -> int:
        return sum(
            1
            for item in self.with_outcome(Outcome.OK)
            if item.detail.get("action") == action
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def inserted(self) -> int:
        return self._action_count("insert")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def updated(self) -> int:
        return self._action_count("update")
