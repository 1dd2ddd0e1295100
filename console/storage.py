"""
Broker Console - Storage Backend
==================================
The management API only consumes the query/delete surface of the broker's
persistent store. StorageBackend describes that surface; MemoryStorage is
the in-process implementation wired by default.
"""

import threading
from typing import Any, Protocol


class StorageBackend(Protocol):
    def stored_clients(self) -> list[dict[str, Any]]: ...

    def stored_subscriptions(self) -> list[dict[str, Any]]: ...

    def stored_retained_messages(self) -> list[dict[str, Any]]: ...

    def delete_client(self, client_id: str) -> None: ...

    def delete_subscription(self, client_id: str, topic_filter: str) -> None: ...

    def delete_retained(self, topic: str) -> None: ...


class MemoryStorage:
    """Dict-backed store; deletes of absent records are no-ops."""

    def __init__(self):
        self._lock = threading.Lock()
        self._clients: dict[str, dict[str, Any]] = {}
        self._subscriptions: dict[tuple[str, str], dict[str, Any]] = {}
        self._retained: dict[str, dict[str, Any]] = {}

    # -- Writes (used by the broker engine) ------------------------------------

    def save_client(self, client_id: str, **fields: Any) -> None:
        with self._lock:
            self._clients[client_id] = {"id": client_id, **fields}

    def save_subscription(self, client_id: str, topic_filter: str, qos: int = 0) -> None:
        with self._lock:
            self._subscriptions[(client_id, topic_filter)] = {
                "client": client_id,
                "filter": topic_filter,
                "qos": qos,
            }

    def save_retained(self, topic: str, payload: str, qos: int = 0) -> None:
        with self._lock:
            self._retained[topic] = {"topic": topic, "payload": payload, "qos": qos}

    # -- Query/delete surface --------------------------------------------------

    def stored_clients(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(c) for c in self._clients.values()]

    def stored_subscriptions(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(s) for s in self._subscriptions.values()]

    def stored_retained_messages(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(m) for m in self._retained.values()]

    def delete_client(self, client_id: str) -> None:
        with self._lock:
            self._clients.pop(client_id, None)

    def delete_subscription(self, client_id: str, topic_filter: str) -> None:
        with self._lock:
            self._subscriptions.pop((client_id, topic_filter), None)

    def delete_retained(self, topic: str) -> None:
        with self._lock:
            self._retained.pop(topic, None)
