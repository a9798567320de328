"""Bazaar stock, claims and weekly replenishment."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .exceptions import InsufficientStockError, KidVoltsError
from .ledger import PointsLedger
from .models import Actor, BatchResult
from .ops import StructuredLogger
from .persistence import BazaarItem, RecordStore, StoreSession
from .policy import PolicyGate

REPLENISH_JOB = "replenish_stock"


class BazaarEconomy:
    """Manage shared, contended bazaar stock."""

    def __init__(
        self,
        store: RecordStore,
        ledger: PointsLedger,
        *,
        policy: PolicyGate | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._policy = policy or PolicyGate()
        self._logger = logger or StructuredLogger()

    def list_items(self, actor: Actor) -> List[BazaarItem]:
        return self._policy.visible("bazaar", actor, self._store.find_all(BazaarItem))

    def view_item(self, actor: Actor, item_id: str) -> BazaarItem:
        item = self._store.find_by_id(BazaarItem, item_id)
        self._policy.require("bazaar", "view", actor, item)
        return item

    def claim(self, actor: Actor, item_id: str) -> BazaarItem:
        """Take one unit of ``item_id`` for ``actor`` and charge its cost.

        Stock, ``claimed_by`` and the ledger debit are written in one unit of
        work; any failure leaves all three untouched.
        """

        def apply(uow: StoreSession) -> BazaarItem:
            item = uow.find_by_id(BazaarItem, item_id)
            self._policy.require("bazaar", "update", actor, item)
            if item.stock <= 0:
                raise InsufficientStockError(f"'{item.item_name}' is out of stock.")
            self._ledger.debit(actor.id, item.cost, uow=uow)
            item.stock -= 1
            if actor.id not in item.claimants:
                item.claimed_by = [*item.claimed_by, actor.id]
            return uow.save(item)

        item = self._store.atomic(apply)
        self._logger.log("item_claimed", item=item.id, name=item.item_name, user=actor.id, cost=item.cost, stock=item.stock)
        return item

    def replenish(self, item_id: str) -> bool:
        """Refill ``item_id`` to ``max_stock``; return ``True`` when a write happened.

        Items with ``max_stock <= 0`` are never refilled.
        """

        def apply(uow: StoreSession) -> Optional[tuple[str, int, int]]:
            item = uow.find_by_id(BazaarItem, item_id)
            if item.max_stock <= 0 or item.stock >= item.max_stock:
                return None
            before = item.stock
            item.stock = item.max_stock
            item.claimed_by = []
            uow.save(item)
            return item.item_name, before, item.stock

        change = self._store.atomic(apply)
        if change is None:
            return False
        name, before, after = change
        self._logger.log("stock_replenished", item=item_id, name=name, before=before, after=after)
        return True

    def replenish_all(self) -> BatchResult:
        """Replenish every item, skipping (and reporting) failures."""

        result = BatchResult(job=REPLENISH_JOB)
        self._logger.log("replenish_started")
        for item in self._store.find_all(BazaarItem):
            try:
                changed = self.replenish(item.id)
            except (KidVoltsError, SQLAlchemyError) as exc:
                result.record_failure(item.id, str(exc))
                self._logger.log("replenish_failed", item=item.id, error=str(exc))
                continue
            if changed:
                result.touched += 1
            else:
                result.skipped += 1
        result.finish()
        self._logger.log(
            "replenish_completed", touched=result.touched, skipped=result.skipped, failures=len(result.failures)
        )
        return result


__all__ = ["REPLENISH_JOB", "BazaarEconomy"]
