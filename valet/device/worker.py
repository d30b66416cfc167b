"""
Background push handling for a location device.

Push messages arrive while the operator may not be looking at the help page.
The worker raises an OS notification and tells every open page to play the
alert sound. Relayed messages are best-effort: a page that fails to receive
one is logged and skipped.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from valet.device.sound import SoundEngine

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Access Valet Parking"
DEFAULT_BODY = "New help request notification"
DEFAULT_URL = "/help-request"
PLAY_NOTIFICATION_SOUND = "PLAY_NOTIFICATION_SOUND"
RELAY_VOLUME = 1.0
RELAY_DURATION_MS = 2000


class PushPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = DEFAULT_TITLE
    body: str = DEFAULT_BODY
    image: str | None = None
    url: str | None = None
    request_id: int | None = Field(default=None, alias="requestId")


class NotificationAction(BaseModel):
    action: str
    title: str


class NotificationOptions(BaseModel):
    title: str
    body: str
    image: str | None = None
    require_interaction: bool = True
    vibrate: list[int] = Field(default_factory=lambda: [200, 100, 200])
    actions: list[NotificationAction] = Field(
        default_factory=lambda: [
            NotificationAction(action="view", title="View Request"),
            NotificationAction(action="close", title="Dismiss"),
        ]
    )
    data: dict[str, Any] = Field(default_factory=dict)


class Page(Protocol):
    url: str

    async def post_message(self, message: dict) -> None: ...

    async def focus(self) -> None: ...


class NotificationDisplay(Protocol):
    async def show(self, options: NotificationOptions) -> None: ...


class DevicePage:
    """An open help-request page; routes sound commands to the sound engine."""

    def __init__(self, url: str, sound: SoundEngine) -> None:
        self.url = url
        self.sound = sound
        self.focused = False

    async def post_message(self, message: dict) -> None:
        if message.get("type") == PLAY_NOTIFICATION_SOUND:
            await self.sound.play_notification_sound(
                message.get("volume") or 0.8, message.get("duration") or 1000
            )

    async def focus(self) -> None:
        self.focused = True


class CommandNotificationDisplay:
    """Shows notifications with ``notify-send``."""

    def __init__(self, command: str = "notify-send") -> None:
        self.command = command

    async def show(self, options: NotificationOptions) -> None:
        args = [self.command, "--urgency=critical", options.title, options.body]
        proc = await asyncio.create_subprocess_exec(*args)
        await proc.wait()


class BackgroundWorker:
    def __init__(
        self,
        display: NotificationDisplay | None,
        open_window: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self.display = display
        self.open_window = open_window
        self.pages: list[Page] = []

    def register_page(self, page: Page) -> None:
        self.pages.append(page)

    def unregister_page(self, page: Page) -> None:
        if page in self.pages:
            self.pages.remove(page)

    async def handle_push(
        self, data: bytes | str | dict | None
    ) -> NotificationOptions | None:
        if not data:
            return None
        if isinstance(data, (bytes, str)):
            data = json.loads(data)
        payload = PushPayload.model_validate(data)

        options = NotificationOptions(
            title=payload.title,
            body=payload.body,
            image=payload.image,
            data={"url": payload.url or DEFAULT_URL, "requestId": payload.request_id},
        )
        if self.display is not None:
            try:
                await self.display.show(options)
            except Exception:
                logger.warning("could not show push notification", exc_info=True)

        await self.relay(
            {
                "type": PLAY_NOTIFICATION_SOUND,
                "volume": RELAY_VOLUME,
                "duration": RELAY_DURATION_MS,
            }
        )
        return options

    async def relay(self, message: dict) -> int:
        delivered = 0
        for page in list(self.pages):
            try:
                await page.post_message(message)
            except Exception:
                logger.warning("message to page %s dropped", page.url, exc_info=True)
                continue
            delivered += 1
        return delivered

    async def handle_notification_click(self, action: str, data: dict) -> None:
        if action == "close":
            return
        url = data.get("url") or DEFAULT_URL
        path = url.split("?")[0]
        for page in self.pages:
            if path in page.url:
                await page.focus()
                return
        if self.open_window is not None:
            await self.open_window(url)
