"""Transactional outbox: side effects that wait for a commit.

Cache invalidation, job enqueueing and event publication all talk to
systems outside the database transaction.  Running them inside the
transaction would let a reader (or a worker) observe the change before
it is durable, or observe a change that later rolls back.

So a unit of work collects them here instead::

    async with enrollment_store.transaction() as uow:
        ...
        uow.after_commit("cache", lambda: cache_service.delete(key))

The store calls ``flush()`` only after COMMIT succeeds and ``discard()``
on rollback.  A failing effect is logged and counted, never raised: the
commit already happened and the caller must see it as a success.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from app.core.metrics import OUTBOX_EFFECTS

logger = logging.getLogger(__name__)

AfterCommitEffect = Callable[[], Awaitable[object]]


class TransactionOutbox:
    def __init__(self) -> None:
        self._effects: list[tuple[str, AfterCommitEffect]] = []

    def __len__(self) -> int:
        return len(self._effects)

    def add(self, kind: str, effect: AfterCommitEffect) -> None:
        """Register an effect.  ``kind`` is a metrics label
        (cache|job|event)."""
        self._effects.append((kind, effect))

    def discard(self) -> None:
        if self._effects:
            logger.debug("Discarding %d after-commit effects", len(self._effects))
        self._effects.clear()

    async def flush(self) -> int:
        """Run every effect in registration order.  Returns how many succeeded."""
        effects, self._effects = self._effects, []
        succeeded = 0
        for kind, effect in effects:
            try:
                await effect()
            except Exception:
                OUTBOX_EFFECTS.labels(kind=kind, result="failed").inc()
                logger.exception("After-commit %s effect failed", kind)
                continue
            OUTBOX_EFFECTS.labels(kind=kind, result="ok").inc()
            succeeded += 1
        return succeeded
