"""Change cursor persistence shared by RebuildJob and SyncCoordinator.

Both the first sync and a completed full rebuild need "make sure a change
cursor exists"; ChangeTracker is the one place that does it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import StoreError
from .schema import StoreKeys

if TYPE_CHECKING:
    from ..source import SourceConnector
    from ..store import DurableStore

logger = logging.getLogger(__name__)


class ChangeTracker:
    """Reads, writes and bootstraps the change cursor of one index."""

    def __init__(
        self,
        store: DurableStore,
        connector: SourceConnector,
        user_id: str = "default",
    ):
        self._store = store
        self._connector = connector
        self.key = StoreKeys.for_user(user_id).cursor

    def load(self) -> str | None:
        """Return the persisted cursor, or None if absent or unreadable."""
        try:
            if self._store.exists(self.key):
                return self._store.read(self.key) or None
        except (StoreError, KeyError, OSError) as e:
            logger.warning("Failed to read change token: %s", e)
        return None

    def save(self, cursor: str) -> None:
        """
        Persist a cursor.

        Raises:
            StoreError: If the store cannot write it
        """
        self._store.write(self.key, cursor)

    def reset(self) -> None:
        """Forget the cursor (the next sync bootstraps again)."""
        delete = getattr(self._store, "delete", None)
        if delete is not None:
            delete(self.key)
        else:
            self._store.write(self.key, "")

    def initialize(self) -> str:
        """
        Fetch a fresh cursor from the source and persist it.

        Marks "now" as the position future syncs start from.

        Raises:
            AuthenticationError, TransientFetchError: From the connector
            StoreError: If the cursor cannot be persisted
        """
        cursor = self._connector.get_fresh_cursor()
        self.save(cursor)
        logger.info(
            "Change tracking initialized with token: %s...", cursor[:20]
        )
        return cursor

    def ensure(self) -> tuple[str, bool]:
        """
        Return the persisted cursor, bootstrapping one if absent.

        Returns:
            (cursor, created) where created is True on bootstrap
        """
        cursor = self.load()
        if cursor is not None:
            return cursor, False
        logger.info("No change token found, getting current token")
        return self.initialize(), True
