# src/subtrack/store/subscriptions.py
from __future__ import annotations

import json
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Iterable, Literal, Optional

import structlog

from storage.kv import KeyValueStorage
from subtrack.billing import next_billing_date
from subtrack.utils.time import days_between, local_now, start_of_day
from subtrack.utils.types import Subscription

log = structlog.get_logger("store")

ChangeSignal = Literal["data_changed", "renewal_changed", "subscription_added"]
ChangeListener = Callable[[ChangeSignal, Optional[Subscription]], None]

# saves landing this close to a billing date raise a renewal-relevant signal
RENEWAL_SIGNAL_DAYS = 7
# default for how long overdue renewals stay in due_for_renewal()
OVERDUE_GRACE_DAYS = 7


class StoreUnavailable(RuntimeError):
    """Mutation attempted without an authenticated user."""


def subscriptions_key(user_id: str) -> str:
    return f"subscriptions:{user_id}"


class SubscriptionStore:
    """
    Per-user subscription CRUD over a KeyValueStorage.

    Reads without a user return an empty list; writes raise StoreUnavailable.
    After every mutation listeners receive "data_changed", plus
    "subscription_added" for creations and "renewal_changed" when the saved
    subscription bills within RENEWAL_SIGNAL_DAYS.
    """
    def __init__(
        self,
        storage: KeyValueStorage,
        user_id: Optional[str],
        clock: Callable[[], datetime] = local_now,
    ):
        self.storage = storage
        self.user_id = user_id
        self._clock = clock
        self._listeners: list[ChangeListener] = []

    # --- signals ---

    def add_listener(self, fn: ChangeListener) -> None:
        self._listeners.append(fn)

    def remove_listener(self, fn: ChangeListener) -> None:
        if fn in self._listeners:
            self._listeners.remove(fn)

    def _emit(self, signal: ChangeSignal, sub: Optional[Subscription] = None) -> None:
        for fn in list(self._listeners):
            try:
                fn(signal, sub)
            except Exception as e:
                log.warning("store_listener_failed", signal=signal, err=str(e))

    # --- persistence ---

    def _key(self) -> str:
        if not self.user_id:
            raise StoreUnavailable("user not authenticated")
        return subscriptions_key(self.user_id)

    async def _write(self, subs: Iterable[Subscription]) -> None:
        payload = json.dumps([s.to_dict() for s in subs], ensure_ascii=False)
        await self.storage.set(self._key(), payload)

    # --- queries ---

    async def get_all(self) -> list[Subscription]:
        if not self.user_id:
            return []
        raw = await self.storage.get(subscriptions_key(self.user_id))
        if not raw:
            return []
        try:
            rows = json.loads(raw)
        except ValueError as e:
            log.warning("subscriptions_corrupt", user=self.user_id, err=str(e))
            return []
        if not isinstance(rows, list):
            log.warning("subscriptions_corrupt", user=self.user_id, err="not a list")
            return []
        return [Subscription.from_dict(r) for r in rows if isinstance(r, dict)]

    async def get_by_id(self, sub_id: str) -> Optional[Subscription]:
        for s in await self.get_all():
            if s.id == sub_id:
                return s
        return None

    async def due_for_renewal(
        self, window_days: int, grace_days: int = OVERDUE_GRACE_DAYS
    ) -> list[Subscription]:
        """
        Active/trial subscriptions overdue by <= grace_days or billing
        within window_days (calendar days), earliest billing date first.
        """
        today = start_of_day(self._clock())
        horizon = today + timedelta(days=window_days)
        out: list[Subscription] = []
        for s in await self.get_all():
            if not s.is_billable or s.next_billing_date is None:
                continue
            due = start_of_day(s.next_billing_date)
            if due <= today:
                if days_between(due, today) <= grace_days:
                    out.append(s)
            elif due <= horizon:
                out.append(s)
        out.sort(key=lambda s: s.next_billing_date)
        return out

    async def by_status(self) -> dict[str, list[Subscription]]:
        groups: dict[str, list[Subscription]] = defaultdict(list)
        for s in await self.get_all():
            groups[s.status].append(s)
        return dict(groups)

    # --- mutations ---

    async def save(self, sub: Subscription) -> Subscription:
        """
        Create or update. New subscriptions get an id and, if missing, a
        billing date one cycle after their start. Updates recompute the
        billing date when the cycle changes or the status re-enters
        active/trial.
        """
        self._key()
        now = self._clock()
        subs = await self.get_all()
        idx = next((i for i, s in enumerate(subs) if sub.id and s.id == sub.id), None)
        is_new = idx is None

        if is_new:
            if not sub.id:
                sub.id = uuid.uuid4().hex[:12]
            if sub.created_at is None:
                sub.created_at = now
            if sub.next_billing_date is None:
                sub.next_billing_date = next_billing_date(
                    sub.start_date or sub.created_at, sub.billing_cycle
                )
            subs.append(sub)
            log.info("subscription_created", sub_id=sub.id, name=sub.name,
                     next_billing=sub.next_billing_date.isoformat())
        else:
            old = subs[idx]
            recalc = old.billing_cycle != sub.billing_cycle or (
                not old.is_billable and sub.is_billable
            )
            if recalc:
                sub.next_billing_date = next_billing_date(
                    now, sub.billing_cycle, old.next_billing_date
                )
            subs[idx] = sub
            log.info("subscription_updated", sub_id=sub.id, name=sub.name, recalculated=recalc)

        await self._write(subs)

        self._emit("data_changed", sub)
        if is_new:
            self._emit("subscription_added", sub)
        if sub.next_billing_date is not None and (
            days_between(now, sub.next_billing_date) <= RENEWAL_SIGNAL_DAYS
        ):
            self._emit("renewal_changed", sub)
        return sub

    async def delete(self, sub_id: str) -> bool:
        self._key()
        subs = await self.get_all()
        kept = [s for s in subs if s.id != sub_id]
        await self._write(kept)
        if len(kept) != len(subs):
            log.info("subscription_deleted", sub_id=sub_id)
        self._emit("data_changed", None)
        return True

    async def seed_if_empty(self, samples: Iterable[Subscription]) -> bool:
        """Write samples when the user has no stored subscriptions yet."""
        if not self.user_id:
            return False
        if await self.storage.get(subscriptions_key(self.user_id)):
            return False
        await self._write(samples)
        log.info("subscriptions_seeded", user=self.user_id)
        return True
