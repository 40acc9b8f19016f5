from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

import structlog

from storage.kv import KeyValueStorage
from subtrack.billing import monthly_spend
from subtrack.utils.types import Subscription

log = structlog.get_logger("ledger")

def dismissed_key(user_id: str) -> str:
    return f"dismissed_alert_ids:{user_id}"


@dataclass(slots=True, frozen=True)
class LedgerView:
    """Read-only ledger snapshot handed to evaluators."""
    total_monthly_spend: float = 0.0
    subscription_ids: tuple[str, ...] = ()
    has_snapshot: bool = False
    checked_renewals: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    processed_ids: frozenset[str] = frozenset()
    dismissed_ids: frozenset[str] = frozenset()

    def is_checked(self, key: str) -> bool:
        return bool(self.checked_renewals.get(key))

    def with_checked(self, updates: Mapping[str, bool]) -> "LedgerView":
        """Same view with extra checked-renewal keys folded in."""
        if not updates:
            return self
        merged = {**self.checked_renewals, **updates}
        return LedgerView(
            total_monthly_spend=self.total_monthly_spend,
            subscription_ids=self.subscription_ids,
            has_snapshot=self.has_snapshot,
            checked_renewals=MappingProxyType(merged),
            processed_ids=self.processed_ids,
            dismissed_ids=self.dismissed_ids,
        )


@dataclass(slots=True)
class LedgerPatch:
    """Mutations an evaluator asks the orchestrator to apply."""
    checked_renewals: dict[str, bool] = field(default_factory=dict)
    processed_ids: set[str] = field(default_factory=set)

    def merge(self, other: "LedgerPatch") -> None:
        self.checked_renewals.update(other.checked_renewals)
        self.processed_ids |= other.processed_ids


class AlertLedger:
    """
    The engine's memory of what was already surfaced.

    - snapshot fields (spend, subscription ids) describe the previous pass
    - checked_renewals / processed_ids live for the session only
    - dismissed_ids are persisted per user and survive reloads

    Owned by the orchestrator; nothing else mutates it.
    """
    def __init__(self, storage: KeyValueStorage, user_id: str):
        self.storage = storage
        self.user_id = user_id
        self.total_monthly_spend: float = 0.0
        self.subscription_ids: list[str] = []
        self.has_snapshot: bool = False
        self.checked_renewals: dict[str, bool] = {}
        self.processed_ids: set[str] = set()
        self.dismissed_ids: set[str] = set()

    # --- persistence ---

    async def load(self) -> None:
        """Hydrate dismissed ids. A corrupt record is treated as empty."""
        raw = await self.storage.get(dismissed_key(self.user_id))
        if not raw:
            self.dismissed_ids = set()
            return
        try:
            ids = json.loads(raw)
            if not isinstance(ids, list):
                raise ValueError("dismissed ids must be a JSON list")
            self.dismissed_ids = {str(x) for x in ids}
        except ValueError as e:
            log.warning("dismissed_ids_corrupt", user=self.user_id, err=str(e))
            self.dismissed_ids = set()

    async def _save_dismissed(self) -> None:
        await self.storage.set(
            dismissed_key(self.user_id), json.dumps(sorted(self.dismissed_ids))
        )

    # --- mutation (orchestrator only) ---

    def snapshot(self, subscriptions: Iterable[Subscription]) -> None:
        subs = list(subscriptions)
        self.total_monthly_spend = monthly_spend(subs)
        self.subscription_ids = [s.id for s in subs]
        self.has_snapshot = True

    def mark_processed(self, ids: Iterable[str]) -> None:
        self.processed_ids.update(ids)

    async def mark_dismissed(self, alert_id: str) -> None:
        self.processed_ids.add(alert_id)
        self.dismissed_ids.add(alert_id)
        await self._save_dismissed()

    def apply(self, patch: LedgerPatch) -> None:
        self.checked_renewals.update(patch.checked_renewals)
        self.mark_processed(patch.processed_ids)

    def reset_session(self) -> None:
        """Forget everything except dismissed ids (what a full reload does)."""
        self.total_monthly_spend = 0.0
        self.subscription_ids = []
        self.has_snapshot = False
        self.checked_renewals = {}
        self.processed_ids = set()

    def view(self) -> LedgerView:
        return LedgerView(
            total_monthly_spend=self.total_monthly_spend,
            subscription_ids=tuple(self.subscription_ids),
            has_snapshot=self.has_snapshot,
            checked_renewals=MappingProxyType(dict(self.checked_renewals)),
            processed_ids=frozenset(self.processed_ids),
            dismissed_ids=frozenset(self.dismissed_ids),
        )
