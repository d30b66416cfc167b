import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from helpers import _banner, _p, shift_report_body

from valet.device.offline import (
    MAX_RETRY_ATTEMPTS,
    OFFLINE_PROBE_SECONDS,
    PENDING_REPORTS_KEY,
    SYNC_INTERVAL_SECONDS,
    NetworkMonitor,
    OfflineReportQueue,
    PendingUploads,
)
from valet.device.storage import LocalStorage
from valet.models import ReportKind


class Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class Recorder:
    """MockTransport handler that records requests and answers with a fixed status."""

    def __init__(self, status_code: int = 201, error: Exception | None = None) -> None:
        self.status_code = status_code
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json={"id": len(self.requests)})


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://test"
    )


async def _never_sleep(seconds: float) -> None:
    raise AssertionError("run loop should not be exercised here")


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2025, 7, 2, 18, 0, tzinfo=UTC))


@pytest.fixture
def queue(clock: Clock) -> OfflineReportQueue:
    return OfflineReportQueue(LocalStorage(), now_fn=clock)


def _dump_queue(queue: OfflineReportQueue) -> None:
    _p("pending reports:")
    for r in queue.get_pending_reports():
        _p(f"  - {r.id} | type={r.type} attempts={r.attempts} ts={r.timestamp}")


def test_save_assigns_kind_prefixed_ids(queue: OfflineReportQueue, clock: Clock) -> None:
    report_id = queue.save(shift_report_body(), ReportKind.SHIFT_REPORT)
    _p(f"saved as {report_id}")

    kind, ts, suffix = report_id.rsplit("-", 2)
    assert kind == "shift-report"
    assert int(ts) == int(clock.now.timestamp() * 1000)
    assert len(suffix) == 9

    [pending] = queue.get_pending_reports()
    assert pending.id == report_id
    assert pending.attempts == 0
    assert pending.data["locationId"] == 3


def test_saved_report_round_trips_until_removed(queue: OfflineReportQueue) -> None:
    body = shift_report_body(notes="Valet stand moved to the side entrance")
    report_id = queue.save(body, ReportKind.SHIFT_REPORT)
    other_id = queue.save({"amount": 12.5}, ReportKind.TAX_PAYMENT)

    pending = {r.id: r for r in queue.get_pending_reports()}
    assert pending[report_id].data == body
    assert pending[report_id].type == ReportKind.SHIFT_REPORT
    assert pending[other_id].type == ReportKind.TAX_PAYMENT

    queue.remove_pending_report(report_id)
    assert [r.id for r in queue.get_pending_reports()] == [other_id]


def test_reports_wait_out_the_cooldown(queue: OfflineReportQueue, clock: Clock) -> None:
    _banner("new reports are not retried within 30 seconds")
    queue.save({"customerName": "J. Doe"}, ReportKind.INCIDENT_REPORT)

    assert queue.get_reports_to_retry() == []
    clock.advance(timedelta(seconds=30))
    assert queue.get_reports_to_retry() == []
    clock.advance(timedelta(milliseconds=1))
    assert len(queue.get_reports_to_retry()) == 1


def test_reports_are_abandoned_after_five_attempts(
    queue: OfflineReportQueue, clock: Clock
) -> None:
    _banner("five failed attempts -> never retried again")
    report_id = queue.save({"amount": 120.0}, ReportKind.TAX_PAYMENT)
    clock.advance(timedelta(minutes=1))

    for _ in range(MAX_RETRY_ATTEMPTS):
        assert [r.id for r in queue.get_reports_to_retry()] == [report_id]
        queue.increment_attempts(report_id)
        _dump_queue(queue)

    assert queue.get_reports_to_retry() == []
    # still stored until the next expiry sweep
    assert queue.pending_count() == 1
    assert queue.clear_expired_reports() == 1
    assert queue.pending_count() == 0


def test_clear_expired_drops_week_old_reports(
    queue: OfflineReportQueue, clock: Clock
) -> None:
    _banner("reports older than seven days are dropped")
    old = queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    clock.advance(timedelta(days=6, hours=23))
    fresh = queue.save({"n": 2}, ReportKind.SHIFT_REPORT)

    clock.advance(timedelta(hours=1, seconds=1))
    assert [r.id for r in queue.get_reports_to_retry()] == [fresh]
    assert queue.pending_count() == 2

    dropped = queue.clear_expired_reports()
    _dump_queue(queue)

    assert dropped == 1
    assert [r.id for r in queue.get_pending_reports()] == [fresh]
    assert old not in {r.id for r in queue.get_pending_reports()}


def test_corrupt_queue_reads_as_empty(clock: Clock) -> None:
    storage = LocalStorage()
    storage.set_item(PENDING_REPORTS_KEY, "{not json")
    queue = OfflineReportQueue(storage, now_fn=clock)

    assert queue.get_pending_reports() == []
    queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    assert queue.pending_count() == 1


def test_remove_and_increment_unknown_ids_are_noops(queue: OfflineReportQueue) -> None:
    report_id = queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    queue.increment_attempts("missing")
    queue.remove_pending_report("missing")

    [pending] = queue.get_pending_reports()
    assert pending.id == report_id
    assert pending.attempts == 0


def test_queue_survives_restart(tmp_path, clock: Clock) -> None:
    path = tmp_path / "device.json"
    report_id = OfflineReportQueue(LocalStorage(path), now_fn=clock).save(
        {"n": 1}, ReportKind.SHIFT_REPORT
    )

    reopened = OfflineReportQueue(LocalStorage(path), now_fn=clock)
    assert [r.id for r in reopened.get_pending_reports()] == [report_id]
    stored = json.loads(path.read_text(encoding="utf-8"))
    assert PENDING_REPORTS_KEY in stored


def test_unreadable_storage_file_starts_empty(tmp_path) -> None:
    path = tmp_path / "device.json"
    path.write_text("garbage", encoding="utf-8")
    assert len(LocalStorage(path)) == 0


@pytest.mark.asyncio
async def test_submit_queues_when_server_unreachable(
    queue: OfflineReportQueue,
) -> None:
    _banner("submit while offline -> report queued")
    handler = Recorder(error=httpx.ConnectError("no route to host"))
    async with _client(handler) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep)
        queued_id = await monitor.submit(shift_report_body(), ReportKind.SHIFT_REPORT)

    _dump_queue(queue)
    assert queued_id is not None
    assert queued_id.startswith("shift-report-")
    assert handler.requests[0].url.path == "/api/shift-reports"
    assert queue.pending_count() == 1


@pytest.mark.asyncio
async def test_submit_queues_on_server_error(queue: OfflineReportQueue) -> None:
    async with _client(Recorder(status_code=503)) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep)
        queued_id = await monitor.submit({"amount": 10.0}, ReportKind.TAX_PAYMENT)

    assert queued_id is not None
    assert queue.pending_count() == 1


@pytest.mark.asyncio
async def test_submit_delivers_directly_when_online(queue: OfflineReportQueue) -> None:
    async with _client(Recorder(status_code=201)) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep)
        assert await monitor.submit({"n": 1}, ReportKind.INCIDENT_REPORT) is None

    assert queue.pending_count() == 0


@pytest.mark.asyncio
async def test_submit_does_not_queue_rejected_reports(queue: OfflineReportQueue) -> None:
    async with _client(Recorder(status_code=422)) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep)
        with pytest.raises(httpx.HTTPStatusError):
            await monitor.submit({"n": 1}, ReportKind.SHIFT_REPORT)

    assert queue.pending_count() == 0


@pytest.mark.asyncio
async def test_sync_posts_due_reports_and_removes_them(
    queue: OfflineReportQueue, clock: Clock
) -> None:
    _banner("sync delivers queued reports to their endpoints")
    shift_id = queue.save(shift_report_body(), ReportKind.SHIFT_REPORT)
    tax_id = queue.save({"amount": 50.0}, ReportKind.TAX_PAYMENT)
    clock.advance(timedelta(seconds=31))

    handler = Recorder(status_code=201)
    async with _client(handler) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep)
        synced = await monitor.sync()

    assert synced == [shift_id, tax_id]
    assert [r.url.path for r in handler.requests] == [
        "/api/shift-reports",
        "/api/tax-payments",
    ]
    assert json.loads(handler.requests[0].content)["locationId"] == 3
    assert queue.pending_count() == 0


@pytest.mark.asyncio
async def test_failed_sync_counts_an_attempt(
    queue: OfflineReportQueue, clock: Clock
) -> None:
    report_id = queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    clock.advance(timedelta(minutes=1))

    async with _client(Recorder(error=httpx.ReadTimeout("slow"))) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep)
        for _ in range(MAX_RETRY_ATTEMPTS + 2):
            assert await monitor.sync() == []

    [pending] = queue.get_pending_reports()
    _dump_queue(queue)
    assert pending.id == report_id
    assert pending.attempts == MAX_RETRY_ATTEMPTS


@pytest.mark.asyncio
async def test_rejected_sync_keeps_report(
    queue: OfflineReportQueue, clock: Clock
) -> None:
    queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    clock.advance(timedelta(minutes=1))

    async with _client(Recorder(status_code=500)) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep)
        assert await monitor.sync() == []

    assert queue.get_pending_reports()[0].attempts == 1


@pytest.mark.asyncio
async def test_coming_online_notifies_listeners_and_syncs(
    queue: OfflineReportQueue, clock: Clock
) -> None:
    _banner("offline -> online triggers an immediate sync")
    queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    clock.advance(timedelta(minutes=1))

    seen: list[bool] = []
    handler = Recorder(status_code=201)
    async with _client(handler) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep, online=False)
        unsubscribe = monitor.add_listener(seen.append)

        await monitor.set_online(False)
        assert seen == []
        assert handler.requests == []

        await monitor.set_online(True)
        assert seen == [True]
        assert queue.pending_count() == 0

        unsubscribe()
        await monitor.set_online(False)
        assert seen == [True]


@pytest.mark.asyncio
async def test_transport_failure_marks_device_offline(
    queue: OfflineReportQueue,
) -> None:
    seen: list[bool] = []
    async with _client(Recorder(error=httpx.ConnectError("down"))) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep)
        monitor.add_listener(seen.append)
        await monitor.submit({"n": 1}, ReportKind.INCIDENT_REPORT)

    assert monitor.online is False
    assert seen == [False]


class _StopLoop(Exception):
    pass


@pytest.mark.asyncio
async def test_offline_monitor_polls_health_until_server_answers(
    queue: OfflineReportQueue, clock: Clock
) -> None:
    _banner("offline: poll /health every few seconds, sync on first success")
    report_id = queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    clock.advance(timedelta(minutes=1))

    handler = Recorder(error=httpx.ConnectError("down"))
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            handler.error = None
        if len(sleeps) == 3:
            raise _StopLoop

    async with _client(handler) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_sleep, online=False)
        with pytest.raises(_StopLoop):
            await monitor.run()

    _p(f"sleeps={sleeps} paths={[r.url.path for r in handler.requests]}")
    assert sleeps == [
        OFFLINE_PROBE_SECONDS,
        OFFLINE_PROBE_SECONDS,
        SYNC_INTERVAL_SECONDS,
    ]
    assert [r.url.path for r in handler.requests] == [
        "/health",
        "/health",
        "/api/shift-reports",
    ]
    assert monitor.online is True
    assert report_id not in [r.id for r in queue.get_pending_reports()]


@pytest.mark.asyncio
async def test_overlapping_syncs_post_each_report_once(
    queue: OfflineReportQueue, clock: Clock
) -> None:
    report_id = queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    clock.advance(timedelta(minutes=1))
    posted: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        posted.append(request.url.path)
        await asyncio.sleep(0)
        return httpx.Response(201, json={"id": 1})

    async with _client(handler) as client:
        monitor = NetworkMonitor(queue, client, sleep_fn=_never_sleep, online=False)
        results = await asyncio.gather(monitor.sync(), monitor.set_online(True))

    assert posted == ["/api/shift-reports"]
    assert results[0] == [report_id]
    assert queue.pending_count() == 0


def test_start_clears_expired_reports(queue: OfflineReportQueue, clock: Clock) -> None:
    queue.save({"n": 1}, ReportKind.SHIFT_REPORT)
    clock.advance(timedelta(days=8))

    monitor = NetworkMonitor(queue, httpx.AsyncClient(), sleep_fn=_never_sleep)
    monitor.start()
    assert queue.pending_count() == 0


@pytest.mark.asyncio
async def test_failed_csv_upload_is_kept_and_can_be_retried(clock: Clock) -> None:
    _banner("CSV upload failure keeps the raw payload for a manual retry")
    storage = LocalStorage()
    uploads = PendingUploads(storage, now_fn=clock)
    csv_data = "key,fullName,isActive,hireDate\nmito,Marco Ito,TRUE,2024-03-01\n"

    async with _client(Recorder(error=httpx.ConnectError("offline"))) as client:
        assert await uploads.upload(client, csv_data, "employees", "tok") is None

    [key] = uploads.keys()
    _p(f"stored as {key}")
    assert key.startswith("pendingCSV_employees_")
    assert PendingUploads.kind_of(key) == "employees"
    assert uploads.get(key) == csv_data

    handler = Recorder(status_code=200)
    async with _client(handler) as client:
        result = await uploads.retry(client, key, "tok")

    assert result == {"id": 1}
    assert handler.requests[0].url.path == "/api/csv/employees"
    assert handler.requests[0].headers["X-Admin-Token"] == "tok"
    assert json.loads(handler.requests[0].content) == {"csvData": csv_data}
    assert uploads.keys() == []


@pytest.mark.asyncio
async def test_failed_retry_keeps_pending_upload(clock: Clock) -> None:
    uploads = PendingUploads(LocalStorage(), now_fn=clock)
    key = uploads.save("a,b\n", "payroll")

    async with _client(Recorder(status_code=401)) as client:
        assert await uploads.retry(client, key, "expired") is None

    assert uploads.keys() == [key]
    uploads.clear()
    assert uploads.keys() == []
