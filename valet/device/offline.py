"""
Offline report queue for locations with unreliable connectivity.

Submissions that fail are kept in device storage and retried by the
NetworkMonitor: every 60 seconds while online, and immediately when the
device comes back online.
"""

import asyncio
import logging
import random
import string
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from valet.device.storage import LocalStorage
from valet.models import ReportKind

logger = logging.getLogger(__name__)

PENDING_REPORTS_KEY = "avp_pending_reports"
PENDING_UPLOAD_PREFIX = "pendingCSV_"
MAX_RETRY_ATTEMPTS = 5
RETRY_COOLDOWN = timedelta(seconds=30)
MAX_AGE = timedelta(days=7)
SYNC_INTERVAL_SECONDS = 60
OFFLINE_PROBE_SECONDS = 5
HEALTH_PATH = "/health"

REPORT_ENDPOINTS = {
    ReportKind.SHIFT_REPORT: "/api/shift-reports",
    ReportKind.INCIDENT_REPORT: "/api/incident-reports",
    ReportKind.TAX_PAYMENT: "/api/tax-payments",
}

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]
Listener = Callable[[bool], None]


class PendingReport(BaseModel):
    id: str
    data: dict
    timestamp: int  # epoch milliseconds
    attempts: int = 0
    type: ReportKind


_reports_adapter = TypeAdapter(list[PendingReport])


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _suffix(length: int = 9) -> str:
    alphabet = string.digits + string.ascii_lowercase
    return "".join(random.choices(alphabet, k=length))


class OfflineReportQueue:
    def __init__(self, storage: LocalStorage, *, now_fn: NowFn | None = None) -> None:
        self._storage = storage
        self._now_fn = now_fn or (lambda: datetime.now(UTC))

    def _write(self, reports: list[PendingReport]) -> None:
        self._storage.set_item(
            PENDING_REPORTS_KEY,
            _reports_adapter.dump_json(reports).decode("utf-8"),
        )

    def save(self, data: dict, kind: ReportKind) -> str:
        kind = ReportKind(kind)
        now_ms = _epoch_ms(self._now_fn())
        report = PendingReport(
            id=f"{kind.value}-{now_ms}-{_suffix()}",
            data=data,
            timestamp=now_ms,
            type=kind,
        )
        self._write([*self.get_pending_reports(), report])
        logger.info("report saved offline: %s", report.id)
        return report.id

    def get_pending_reports(self) -> list[PendingReport]:
        stored = self._storage.get_item(PENDING_REPORTS_KEY)
        if not stored:
            return []
        try:
            return _reports_adapter.validate_json(stored)
        except ValidationError:
            logger.error("pending report queue is corrupt; ignoring it", exc_info=True)
            return []

    def remove_pending_report(self, report_id: str) -> None:
        self._write([r for r in self.get_pending_reports() if r.id != report_id])
        logger.info("removed pending report %s", report_id)

    def increment_attempts(self, report_id: str) -> None:
        reports = self.get_pending_reports()
        for report in reports:
            if report.id == report_id:
                report.attempts += 1
                self._write(reports)
                return

    def get_reports_to_retry(self) -> list[PendingReport]:
        now_ms = _epoch_ms(self._now_fn())
        cooldown_ms = RETRY_COOLDOWN.total_seconds() * 1000
        max_age_ms = MAX_AGE.total_seconds() * 1000
        return [
            r
            for r in self.get_pending_reports()
            if r.attempts < MAX_RETRY_ATTEMPTS
            and cooldown_ms < now_ms - r.timestamp < max_age_ms
        ]

    def clear_expired_reports(self) -> int:
        cutoff_ms = _epoch_ms(self._now_fn() - MAX_AGE)
        reports = self.get_pending_reports()
        kept = [
            r
            for r in reports
            if r.timestamp > cutoff_ms and r.attempts < MAX_RETRY_ATTEMPTS
        ]
        self._write(kept)
        dropped = len(reports) - len(kept)
        if dropped:
            logger.info("dropped %d expired pending reports", dropped)
        return dropped

    def pending_count(self) -> int:
        return len(self.get_pending_reports())


class NetworkMonitor:
    """
    Tracks whether the server is reachable. A transport failure marks the
    device offline; while offline the health endpoint is polled every few
    seconds, and the first successful check triggers a retry sweep.
    """

    def __init__(
        self,
        queue: OfflineReportQueue,
        client: httpx.AsyncClient,
        *,
        sleep_fn: SleepFn,
        online: bool = True,
        interval: float = SYNC_INTERVAL_SECONDS,
        probe_interval: float = OFFLINE_PROBE_SECONDS,
    ) -> None:
        self.queue = queue
        self.online = online
        self._client = client
        self._sleep_fn = sleep_fn
        self._interval = interval
        self._probe_interval = probe_interval
        self._listeners: set[Listener] = set()
        self._sync_lock = asyncio.Lock()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    def start(self) -> None:
        self.queue.clear_expired_reports()

    async def set_online(self, online: bool) -> None:
        if online == self.online:
            return
        self.online = online
        logger.info("network is %s", "online" if online else "offline")
        for listener in list(self._listeners):
            listener(online)
        if online:
            await self.sync()

    async def check_connectivity(self) -> bool:
        try:
            resp = await self._client.get(HEALTH_PATH)
            reachable = resp.is_success
        except httpx.TransportError:
            reachable = False
        await self.set_online(reachable)
        return reachable

    async def submit(self, data: dict, kind: ReportKind) -> str | None:
        """
        Post a report, queueing it when the server cannot be reached.
        Returns the queue id when the report was queued, None when delivered.
        """
        kind = ReportKind(kind)
        try:
            resp = await self._client.post(REPORT_ENDPOINTS[kind], json=data)
        except httpx.TransportError:
            logger.warning("%s submission failed; queueing", kind.value, exc_info=True)
            report_id = self.queue.save(data, kind)
            await self.set_online(False)
            return report_id
        if resp.status_code >= 500:
            logger.warning("%s submission got %d; queueing", kind.value, resp.status_code)
            return self.queue.save(data, kind)
        resp.raise_for_status()
        return None

    async def sync(self) -> list[str]:
        # a sweep already in flight covers the same reports
        if self._sync_lock.locked():
            return []
        async with self._sync_lock:
            return await self._sync()

    async def _sync(self) -> list[str]:
        synced: list[str] = []
        for report in self.queue.get_reports_to_retry():
            self.queue.increment_attempts(report.id)
            try:
                resp = await self._client.post(
                    REPORT_ENDPOINTS[report.type], json=report.data
                )
            except httpx.TransportError:
                logger.warning("failed to sync report %s", report.id, exc_info=True)
                await self.set_online(False)
                break
            if resp.is_success:
                self.queue.remove_pending_report(report.id)
                synced.append(report.id)
                logger.info("synced offline report %s", report.id)
            else:
                logger.warning(
                    "sync of report %s rejected with %d", report.id, resp.status_code
                )
        return synced

    async def run(self) -> None:
        while True:
            if self.online:
                await self._sleep_fn(self._interval)
                await self.sync()
            else:
                await self._sleep_fn(self._probe_interval)
                await self.check_connectivity()


class PendingUploads:
    """Raw CSV payloads whose upload failed, kept for manual re-submission."""

    def __init__(self, storage: LocalStorage, *, now_fn: NowFn | None = None) -> None:
        self._storage = storage
        self._now_fn = now_fn or (lambda: datetime.now(UTC))

    def save(self, csv_data: str, kind: str) -> str:
        key = f"{PENDING_UPLOAD_PREFIX}{kind}_{_epoch_ms(self._now_fn())}"
        self._storage.set_item(key, csv_data)
        logger.warning("CSV upload stored locally as %s", key)
        return key

    def keys(self) -> list[str]:
        return sorted(
            k for k in self._storage.keys() if k.startswith(PENDING_UPLOAD_PREFIX)
        )

    def get(self, key: str) -> str | None:
        return self._storage.get_item(key)

    def remove(self, key: str) -> None:
        self._storage.remove_item(key)

    def clear(self) -> None:
        for key in self.keys():
            self._storage.remove_item(key)

    @staticmethod
    def kind_of(key: str) -> str:
        return key[len(PENDING_UPLOAD_PREFIX):].rsplit("_", 1)[0]

    async def upload(
        self, client: httpx.AsyncClient, csv_data: str, kind: str, admin_token: str
    ) -> dict | None:
        """
        Upload a CSV; on any failure the raw payload is kept locally and None
        is returned.
        """
        try:
            resp = await client.post(
                f"/api/csv/{kind}",
                json={"csvData": csv_data},
                headers={"X-Admin-Token": admin_token},
            )
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.warning("CSV upload failed", exc_info=True)
            self.save(csv_data, kind)
            return None
        return resp.json()

    async def retry(
        self, client: httpx.AsyncClient, key: str, admin_token: str
    ) -> dict | None:
        csv_data = self.get(key)
        if csv_data is None:
            return None
        try:
            resp = await client.post(
                f"/api/csv/{self.kind_of(key)}",
                json={"csvData": csv_data},
                headers={"X-Admin-Token": admin_token},
            )
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.warning("retry of pending upload %s failed", key, exc_info=True)
            return None
        self.remove(key)
        return resp.json()
