"""
Change-Reset Decider

Decides whether a freshly loaded menu is a real change compared with the
last menu this deployment has seen. A real change resets the week's
counters; re-loading the same menu (a page refresh, a second upload of the
same file, another process loading it) must not.

The fingerprint lives in the snapshot cache so every process shares it.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from weekly_orders.core.errors import StorageReadError, StorageWriteError
from weekly_orders.services.cache import MENU_FINGERPRINT, BaseSnapshotCache
from weekly_orders.services.menu_normalizer import CANONICAL_DAYS

logger = logging.getLogger(__name__)

RESET_NOTICE = "Menú actualizado. Los pedidos de la semana se han reiniciado."


def menu_fingerprint(menu: Mapping[str, Iterable[str]]) -> str:
    """
    Canonical JSON of a normalized menu.

    Days follow Monday..Friday, options keep their given order and
    non-ASCII text is kept as is, so equal content always gives equal bytes.
    """
    ordered = {day: list(menu[day]) for day in CANONICAL_DAYS if day in menu}
    return json.dumps(ordered, ensure_ascii=False, separators=(",", ":"))


@dataclass
class ResetDecision:
    """
    Outcome of observing a menu.

    Attributes:
        should_reset: True only for a real content change
        fingerprint: Fingerprint of the observed menu
        previous_fingerprint: Fingerprint remembered before this observation
        seeded: True when this was the first observation
        skipped: True when the comparison could not run (storage failure)
        notice: User-facing message to show when resetting
    """
    should_reset: bool
    fingerprint: str
    previous_fingerprint: Optional[str] = None
    seeded: bool = False
    skipped: bool = False
    notice: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_reset": self.should_reset,
            "seeded": self.seeded,
            "skipped": self.skipped,
            "notice": self.notice,
        }


class ChangeResetDecider:
    """Compares menus by fingerprint and remembers the last one seen."""

    def __init__(self, cache: BaseSnapshotCache):
        self.cache = cache

    async def observe(
        self,
        menu: Mapping[str, Iterable[str]],
        previous_menu: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> ResetDecision:
        """
        Decide whether ``menu`` should reset the week's orders.

        Args:
            menu: Newly loaded canonical menu
            previous_menu: Menu this process already had in memory, if any

        Returns:
            ResetDecision. Any failure to read the remembered fingerprint
            yields ``should_reset=False``.
        """
        fingerprint = menu_fingerprint(menu)

        try:
            snapshot = await self.cache.get(MENU_FINGERPRINT)
        except StorageReadError as e:
            logger.warning(f"Menu fingerprint unavailable, not resetting: {e.message}")
            return ResetDecision(should_reset=False, fingerprint=fingerprint, skipped=True)

        previous = snapshot.value if snapshot is not None else None

        if previous is None:
            if not await self._remember(fingerprint):
                return ResetDecision(should_reset=False, fingerprint=fingerprint, skipped=True)
            logger.info("Menu fingerprint seeded")
            return ResetDecision(should_reset=False, fingerprint=fingerprint, seeded=True)

        if previous == fingerprint:
            return ResetDecision(should_reset=False, fingerprint=fingerprint, previous_fingerprint=previous)

        if previous_menu is not None and menu_fingerprint(previous_menu) == fingerprint:
            # Another process already replaced the fingerprint for an older menu
            logger.debug("Menu matches the in-memory copy, keeping counters")
            return ResetDecision(should_reset=False, fingerprint=fingerprint, previous_fingerprint=previous)

        # Unsaved fingerprint would make the next observation reset again
        if not await self._remember(fingerprint):
            return ResetDecision(
                should_reset=False,
                fingerprint=fingerprint,
                previous_fingerprint=previous,
                skipped=True,
            )

        logger.info("Menu content changed, counters will be reset")
        return ResetDecision(
            should_reset=True,
            fingerprint=fingerprint,
            previous_fingerprint=previous,
            notice=RESET_NOTICE,
        )

    async def restore(self, decision: ResetDecision) -> None:
        """Put back the fingerprint a failed reset replaced."""
        try:
            if decision.previous_fingerprint is None:
                await self.cache.delete(MENU_FINGERPRINT)
            else:
                await self.cache.set(MENU_FINGERPRINT, decision.previous_fingerprint)
        except StorageWriteError as e:
            logger.error(f"Could not restore the menu fingerprint: {e.message}")

    async def _remember(self, fingerprint: str) -> bool:
        try:
            await self.cache.set(MENU_FINGERPRINT, fingerprint)
        except StorageWriteError as e:
            logger.warning(f"Menu fingerprint not saved, not resetting: {e.message}")
            return False
        return True
