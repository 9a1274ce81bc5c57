"""Trader roster reconciliation.

Compares the traders this server group should follow (from storage) with
the live supervisor sessions and opens or drains sessions to match.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from tracker.engine.supervisor import ConnectionSupervisor
from tracker.services.storage import TraderRef

logger = logging.getLogger(__name__)


@dataclass
class RosterDiff:
    opened: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.opened or self.closed)


class RosterReconciler:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        loader: Callable[[], Iterable[TraderRef]],
    ):
        self._supervisor = supervisor
        self._loader = loader

    async def reconcile(self) -> RosterDiff:
        """Bring live sessions in line with the stored roster.

        Load failures propagate; the next scheduled run retries.
        """
        desired = {t.address: t for t in self._loader()}
        diff = RosterDiff()

        for address in self._supervisor.addresses():
            if address not in desired:
                await self._supervisor.close(address)
                diff.closed.append(address)

        for address, trader in desired.items():
            if not self._supervisor.has(address):
                self._supervisor.open(trader.user, address)
                diff.opened.append(address)

        if diff.changed:
            logger.info(
                f"Roster reconciled: {len(desired)} traders, "
                f"opened {len(diff.opened)}, closed {len(diff.closed)}"
            )
        else:
            logger.debug(f"Roster unchanged ({len(desired)} traders)")
        return diff
