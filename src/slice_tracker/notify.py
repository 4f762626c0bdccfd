"""Advisory "slices changed" notifications.

Receivers must re-query the store; notifications carry no payload and may be
delivered after other processes already see the new rows.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from .db import SqliteSliceStore

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ChangeNotifier:
    """Fan out change hints to every live surface in this process."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def notify_slices_changed(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Slice change listener %r failed.", listener)


class StoreChangeWatcher:
    """Turn commits made by other processes into local notifications.

    Polls SQLite's ``PRAGMA data_version`` on a dedicated connection; the value
    changes whenever another connection commits to the same file.
    """

    def __init__(self, store: SqliteSliceStore, notifier: ChangeNotifier) -> None:
        self._store = store
        self._notifier = notifier
        self._last_version = store.data_version()

    def poll(self) -> bool:
        version = self._store.data_version()
        if version == self._last_version:
            return False
        self._last_version = version
        logger.debug("Store changed externally (data_version=%d).", version)
        self._notifier.notify_slices_changed()
        return True
