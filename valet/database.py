from collections import defaultdict
from collections.abc import Callable, Iterator, MutableMapping
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from valet.models import (
    AdminSession,
    HelpRequest,
    HelpRequestStatus,
    HelpResponse,
    HelpResponseStatus,
)

K = TypeVar("K")
V = TypeVar("V")

AUTO_REMOVE_AFTER = timedelta(minutes=5)
REQUEST_TTL = timedelta(hours=1)


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.

    Keys are namespaced as ``"<kind>:<id>"``. Help request transitions are
    done in single synchronous calls so concurrent handlers on the event loop
    cannot interleave between the check and the write.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}
        self._sequences: defaultdict[str, int] = defaultdict(int)

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> bool:
        return self._store.pop(key, None) is not None

    def all(self) -> list[V]:
        return list(self._store.values())

    def of_type(self, cls: type) -> list:
        return [v for v in self._store.values() if isinstance(v, cls)]

    def clear(self) -> None:
        self._store.clear()
        self._sequences.clear()

    def next_id(self, kind: str) -> int:
        self._sequences[kind] += 1
        return self._sequences[kind]

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    def responses_for(self, help_request_id: int) -> list[HelpResponse]:
        responses = [
            r
            for r in self.of_type(HelpResponse)
            if r.help_request_id == help_request_id
        ]
        return sorted(responses, key=lambda r: r.responded_at, reverse=True)

    def record_response_if_open(
        self,
        help_request_id: int,
        build_response: Callable[[int], HelpResponse],
        responded_at: datetime,
    ) -> HelpResponse | None:
        """
        Store a response and mark the request fulfilled, unless the request
        is already completed or expired. Returns None in that case.
        """
        request = self._store.get(f"help_request:{help_request_id}")
        if not isinstance(request, HelpRequest):
            return None
        if request.status not in (
            HelpRequestStatus.ACTIVE,
            HelpRequestStatus.FULFILLED,
        ):
            return None

        response = build_response(self.next_id("help_response"))
        self._store[f"help_response:{response.id}"] = response

        if request.status == HelpRequestStatus.ACTIVE:
            request.status = HelpRequestStatus.FULFILLED
            request.resolved_at = responded_at
        return response

    def complete_help_request(
        self, help_request_id: int, completed_at: datetime
    ) -> HelpRequest | None:
        request = self._store.get(f"help_request:{help_request_id}")
        if not isinstance(request, HelpRequest):
            return None

        request.status = HelpRequestStatus.COMPLETED
        request.completed_at = completed_at
        request.auto_remove_at = completed_at + AUTO_REMOVE_AFTER

        for response in self.responses_for(help_request_id):
            response.status = HelpResponseStatus.COMPLETED
            response.completed_at = completed_at
        return request

    def expire_stale_help_requests(self, now: datetime) -> int:
        expired = 0
        for request in self.of_type(HelpRequest):
            if (
                request.status == HelpRequestStatus.ACTIVE
                and request.requested_at < now - REQUEST_TTL
            ):
                request.status = HelpRequestStatus.EXPIRED
                request.resolved_at = now
                request.auto_remove_at = now
                expired += 1
        return expired

    def visible_help_requests(self, now: datetime) -> list[HelpRequest]:
        visible = [
            r
            for r in self.of_type(HelpRequest)
            if (
                r.status
                in (HelpRequestStatus.ACTIVE, HelpRequestStatus.FULFILLED)
                and r.requested_at >= now - REQUEST_TTL
            )
            or (
                r.status == HelpRequestStatus.COMPLETED
                and r.auto_remove_at is not None
                and r.auto_remove_at > now
            )
        ]
        return sorted(visible, key=lambda r: r.requested_at, reverse=True)

    def purge_expired_admin_sessions(self, now: datetime) -> int:
        expired = [
            key
            for key, value in self._store.items()
            if isinstance(value, AdminSession) and value.expires_at <= now
        ]
        for key in expired:
            del self._store[key]
        return len(expired)
