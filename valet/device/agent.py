import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

import httpx
from pydantic import TypeAdapter

from valet.config import DeviceSettings
from valet.device.offline import NetworkMonitor, OfflineReportQueue, PendingUploads
from valet.device.push import PushSubscriptionManager
from valet.device.scheduler import ContinuousNotificationScheduler
from valet.device.session import AdminSession
from valet.device.sound import AudioSink, SoundEngine
from valet.device.storage import LocalStorage
from valet.device.worker import (
    BackgroundWorker,
    DevicePage,
    NotificationDisplay,
    NotificationOptions,
)
from valet.models import HelpRequest, HelpRequestStatus

logger = logging.getLogger(__name__)

ACTIVE_POLL_SECONDS = 3
HELP_REQUEST_PAGE = "/help-request"

SleepFn = Callable[[float], Awaitable[None]]

_board_adapter = TypeAdapter(list[HelpRequest])


class DeviceAgent:
    """
    Runs on a location's device: watches the dispatch board, nags about open
    help requests, handles incoming pushes and keeps offline reports flowing.
    """

    def __init__(
        self,
        settings: DeviceSettings,
        client: httpx.AsyncClient,
        *,
        sink: AudioSink | None = None,
        display: NotificationDisplay | None = None,
        storage: LocalStorage | None = None,
        now_fn: Callable[[], datetime] | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.client = client
        self.display = display
        self.sound = SoundEngine(sink)
        self.storage = storage or LocalStorage(settings.storage_path)
        self._sleep_fn = sleep_fn

        self.scheduler = ContinuousNotificationScheduler(
            self.alert, self.fetch_recent_responses, now_fn=now_fn, sleep_fn=sleep_fn
        )
        self.monitor = NetworkMonitor(
            OfflineReportQueue(self.storage, now_fn=now_fn), client, sleep_fn=sleep_fn
        )
        self.uploads = PendingUploads(self.storage, now_fn=now_fn)
        self.session = AdminSession(self.storage, now_fn=now_fn)
        self.push = PushSubscriptionManager(client)

        # the help page stays open on the device, so relayed sound commands
        # always have somewhere to play
        self.worker = BackgroundWorker(display)
        self.page = DevicePage(f"{settings.server_url}{HELP_REQUEST_PAGE}", self.sound)
        self.worker.register_page(self.page)

        self._announced: set[int] = set()

    async def alert(self, title: str, message: str) -> None:
        await self.sound.play_urgent_alert(1.0)
        if self.display is not None:
            await self.display.show(NotificationOptions(title=title, body=message))

    async def handle_push(
        self, data: bytes | str | dict | None
    ) -> NotificationOptions | None:
        return await self.worker.handle_push(data)

    async def fetch_recent_responses(self) -> list[dict]:
        resp = await self.client.get("/api/help-responses/recent")
        resp.raise_for_status()
        return resp.json()

    async def poll_help_requests(self) -> None:
        try:
            resp = await self.client.get("/api/help-requests/active")
            resp.raise_for_status()
            board = _board_adapter.validate_python(resp.json())
        except (httpx.HTTPError, ValueError):
            logger.warning("failed to poll active help requests", exc_info=True)
            return

        # ids restart when the server does; forget ids that left the board
        self._announced &= {r.id for r in board}

        for r in board:
            if r.status == HelpRequestStatus.COMPLETED:
                self.scheduler.stop(r.id)
                continue
            if r.status != HelpRequestStatus.ACTIVE or r.id in self._announced:
                continue
            self._announced.add(r.id)
            self.scheduler.start(
                r.id,
                f"Help needed at {r.requesting_location}",
                r.description,
                is_own_request=r.requesting_location == self.settings.location_name,
            )

    async def register_push(self) -> bool:
        subscription = self.settings.push_subscription
        if not subscription:
            return False
        try:
            await self.push.subscribe(subscription, self.settings.location_name or None)
        except (httpx.HTTPError, KeyError):
            logger.warning("push registration failed", exc_info=True)
            return False
        return True

    async def upload_csv(self, csv_data: str, kind: str) -> dict | None:
        token = self.session.token
        if token is None:
            logger.warning("CSV upload needs an admin session")
            return None
        self.session.touch()
        return await self.uploads.upload(self.client, csv_data, kind, token)

    async def _poll_forever(self) -> None:
        while True:
            await self.poll_help_requests()
            await self._sleep_fn(ACTIVE_POLL_SECONDS)

    async def run(self) -> None:
        self.monitor.start()
        await self.register_push()
        try:
            await asyncio.gather(
                self._poll_forever(),
                self.scheduler.run_response_poller(),
                self.monitor.run(),
            )
        finally:
            self.scheduler.stop_all()
