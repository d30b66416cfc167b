"""
Device-side UI flags.

``admin_authenticated``/``admin_auth_time`` only decide whether the admin
screens are shown; every admin call is authorized by the server token.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx

from valet.device.storage import LocalStorage

ADMIN_AUTHENTICATED = "admin_authenticated"
ADMIN_AUTH_TIME = "admin_auth_time"
ADMIN_TOKEN = "admin_token"
POPUP_DISMISSED = "assistance-center-popup-dismissed"
ADMIN_SESSION_TIMEOUT = timedelta(minutes=2)


class AdminSession:
    def __init__(
        self,
        storage: LocalStorage,
        *,
        now_fn: Callable[[], datetime] | None = None,
        timeout: timedelta = ADMIN_SESSION_TIMEOUT,
    ) -> None:
        self._storage = storage
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self.timeout = timeout

    async def login(self, client: httpx.AsyncClient, password: str) -> bool:
        resp = await client.post("/api/admin/login", json={"password": password})
        if resp.status_code == 401:
            return False
        resp.raise_for_status()
        self._storage.set_item(ADMIN_TOKEN, resp.json()["token"])
        self._storage.set_item(ADMIN_AUTHENTICATED, "true")
        self.touch()
        return True

    def touch(self) -> None:
        now_ms = int(self._now_fn().timestamp() * 1000)
        self._storage.set_item(ADMIN_AUTH_TIME, str(now_ms))

    def is_authenticated(self) -> bool:
        if self._storage.get_item(ADMIN_AUTHENTICATED) != "true":
            return False
        auth_ms = int(self._storage.get_item(ADMIN_AUTH_TIME) or "0")
        now_ms = int(self._now_fn().timestamp() * 1000)
        if now_ms - auth_ms > self.timeout.total_seconds() * 1000:
            self.logout()
            return False
        return True

    @property
    def token(self) -> str | None:
        if not self.is_authenticated():
            return None
        return self._storage.get_item(ADMIN_TOKEN)

    def logout(self) -> None:
        for key in (ADMIN_AUTHENTICATED, ADMIN_AUTH_TIME, ADMIN_TOKEN):
            self._storage.remove_item(key)


def popup_dismissed(storage: LocalStorage) -> bool:
    return storage.get_item(POPUP_DISMISSED) == "true"


def dismiss_popup(storage: LocalStorage) -> None:
    storage.set_item(POPUP_DISMISSED, "true")
