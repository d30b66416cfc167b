import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)

NOTIFICATION_INTERVAL = timedelta(seconds=30)
MAX_DURATION = timedelta(minutes=3)
RESPONSE_POLL_SECONDS = 10

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]
AlertFn = Callable[[str, str], Awaitable[None]]
FetchResponsesFn = Callable[[], Awaitable[list[dict]]]


@dataclass
class PendingNotification:
    request_id: int
    title: str
    message: str
    started_at: datetime
    is_own_request: bool = False
    task: asyncio.Task | None = field(default=None, repr=False)


class ContinuousNotificationScheduler:
    """
    Re-announces an unanswered help request every 30 seconds for three
    minutes, or until a dispatched response for it is observed.

    Only one cycle runs per request id; starting a request again replaces the
    running cycle. Alert and polling failures are logged and never end a
    cycle early.
    """

    def __init__(
        self,
        alert: AlertFn,
        fetch_recent_responses: FetchResponsesFn,
        *,
        now_fn: NowFn | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        interval: timedelta = NOTIFICATION_INTERVAL,
        max_duration: timedelta = MAX_DURATION,
        poll_seconds: float = RESPONSE_POLL_SECONDS,
    ) -> None:
        self._alert = alert
        self._fetch_recent_responses = fetch_recent_responses
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._sleep_fn = sleep_fn
        self.interval = interval
        self.max_duration = max_duration
        self.poll_seconds = poll_seconds
        self._active: dict[int, PendingNotification] = {}

    def start(
        self,
        request_id: int,
        title: str,
        message: str,
        *,
        is_own_request: bool = False,
    ) -> PendingNotification:
        self.stop(request_id)
        logger.info(
            "starting notification cycle for request %s%s",
            request_id,
            " (own request, silent)" if is_own_request else "",
        )

        notification = PendingNotification(
            request_id=request_id,
            title=title,
            message=message,
            started_at=self._now_fn(),
            is_own_request=is_own_request,
        )
        task = asyncio.create_task(self._run(notification))
        notification.task = task
        self._active[request_id] = notification

        def _cleanup(_t: asyncio.Task) -> None:
            if self._active.get(request_id) is notification:
                del self._active[request_id]

        task.add_done_callback(_cleanup)
        return notification

    def stop(self, request_id: int) -> bool:
        notification = self._active.pop(request_id, None)
        if notification is None:
            return False
        if notification.task is not None:
            notification.task.cancel()
        logger.info("stopped notification cycle for request %s", request_id)
        return True

    def stop_all(self) -> None:
        for request_id in list(self._active):
            self.stop(request_id)

    def active_request_ids(self) -> list[int]:
        return list(self._active)

    def is_active(self, request_id: int) -> bool:
        return request_id in self._active

    async def _run(self, notification: PendingNotification) -> None:
        start = notification.started_at
        deadline = start + self.max_duration
        fired = 0
        try:
            while True:
                if not notification.is_own_request:
                    await self._send_alert(notification)
                fired += 1

                next_at = start + self.interval * fired
                if next_at >= deadline:
                    break
                remaining = (next_at - self._now_fn()).total_seconds()
                if remaining > 0:
                    await self._sleep_fn(remaining)

            # stay registered until the hard ceiling
            remaining = (deadline - self._now_fn()).total_seconds()
            if remaining > 0:
                await self._sleep_fn(remaining)
            logger.info(
                "notification cycle for request %s reached its time limit",
                notification.request_id,
            )
        except asyncio.CancelledError:
            return

    async def _send_alert(self, notification: PendingNotification) -> None:
        try:
            await self._alert(notification.title, notification.message)
        except Exception:
            logger.warning(
                "alert for request %s failed", notification.request_id, exc_info=True
            )

    async def check_for_responses(self) -> list[int]:
        """Stop every tracked request that has a dispatched response."""
        if not self._active:
            return []
        try:
            responses = await self._fetch_recent_responses()
            dispatched = {
                r.get("helpRequestId")
                for r in responses
                if isinstance(r, dict) and r.get("status") == "dispatched"
            }
        except Exception:
            logger.warning("failed to check help responses", exc_info=True)
            return []

        stopped = [rid for rid in list(self._active) if rid in dispatched]
        for request_id in stopped:
            logger.info("valet dispatched for request %s", request_id)
            self.stop(request_id)
        return stopped

    async def run_response_poller(self) -> None:
        while True:
            await self._sleep_fn(self.poll_seconds)
            if self._active:
                await self.check_for_responses()
