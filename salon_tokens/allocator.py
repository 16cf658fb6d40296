from __future__ import annotations

# Sequence allocator.
#
# Numbers come from the store's atomic per-queue counter. Called inside the
# same store transaction as the token insert, the number and the row commit
# (or roll back) together, so a number is never handed out twice and the
# allocator never skips one.

import logging
from typing import TYPE_CHECKING

from .errors import AllocationUnavailable, StoreUnavailable

if TYPE_CHECKING:
    from .store import TokenStore

logger = logging.getLogger(__name__)


class SequenceAllocator:
    def __init__(self, store: TokenStore) -> None:
        self.store = store

    def next(self, queue: str) -> int:
        """Return the next sequence number for `queue`.

        Raises:
            AllocationUnavailable: the counter could not be reached. There is
                no fallback number.
        """
        try:
            n = self.store.next_sequence(queue)
        except AllocationUnavailable:
            raise
        except StoreUnavailable as e:
            raise AllocationUnavailable(f"cannot allocate a number for {queue}: {e}") from e
        logger.debug("allocated %s #%d", queue, n)
        return n
