"""
Run the location device agent.

Example:
  VALET_SERVER_URL=https://valet.example.com VALET_LOCATION="Truluck's" python -m valet.device

Set VALET_PUSH_SUBSCRIPTION to the platform push handle (JSON) to register it
with the server at startup.
"""
import asyncio

import httpx

from valet.config import DeviceSettings
from valet.device.agent import DeviceAgent
from valet.device.sound import CommandSink
from valet.device.worker import CommandNotificationDisplay
from valet.logging import setup_json_logging


async def _run(settings: DeviceSettings) -> None:
    async with httpx.AsyncClient(base_url=settings.server_url, timeout=10) as client:
        agent = DeviceAgent(
            settings,
            client,
            sink=CommandSink(),
            display=CommandNotificationDisplay(),
        )
        await agent.run()


def main() -> None:
    setup_json_logging()
    asyncio.run(_run(DeviceSettings.from_env()))


if __name__ == "__main__":
    main()
