import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from marketplace.services.marketplace_store import MarketplaceStore, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_request_ids: List[str] = field(default_factory=list)
    ignored_offer_count: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.expired_request_ids or self.ignored_offer_count)


class ExpirationSweeper:
    """Lazy sweep run at the start of read paths instead of a scheduler."""

    def __init__(self, store: MarketplaceStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        expired_ids, ignored = self._store.expire_stale_requests(now or self._clock())
        result = SweepResult(expired_request_ids=expired_ids, ignored_offer_count=ignored)
        if result.changed:
            logger.info(
                "expiration_sweep expired_requests=%d ignored_offers=%d",
                len(expired_ids),
                ignored,
            )
        return result
