import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol

from valet.sound import SAMPLE_RATE, render_alert, render_tone, to_wav

logger = logging.getLogger(__name__)

NOTIFICATION_FREQUENCY = 1000


class AudioSink(Protocol):
    state: str  # "running" or "suspended"

    async def resume(self) -> None: ...

    async def play(self, wav: bytes) -> None: ...


class CommandSink:
    """Plays WAV data by piping it to an external player such as ``aplay``."""

    state = "running"

    def __init__(self, command: Sequence[str] = ("aplay", "-q", "-")) -> None:
        self.command = tuple(command)

    async def resume(self) -> None:
        self.state = "running"

    async def play(self, wav: bytes) -> None:
        proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate(wav)
        if proc.returncode:
            raise OSError(
                f"{self.command[0]} exited with {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )


class SoundEngine:
    def __init__(self, sink: AudioSink | None) -> None:
        self.sink = sink

    async def _play(self, wav: bytes, what: str) -> bool:
        if self.sink is None:
            logger.warning("audio output not available; %s not played", what)
            return False
        try:
            if self.sink.state == "suspended":
                await self.sink.resume()
            await self.sink.play(wav)
        except Exception:
            logger.error("failed to play %s", what, exc_info=True)
            return False
        return True

    async def play_urgent_alert(self, volume: float = 1.0) -> bool:
        return await self._play(to_wav(render_alert(volume)), "urgent alert")

    async def play_notification_sound(
        self, volume: float = 0.8, duration_ms: int = 1000
    ) -> bool:
        samples = render_tone(
            NOTIFICATION_FREQUENCY, volume, seconds=duration_ms / 1000
        )
        return await self._play(to_wav(samples, SAMPLE_RATE), "notification sound")

    async def enable_after_user_gesture(self) -> None:
        if self.sink is not None and self.sink.state == "suspended":
            try:
                await self.sink.resume()
            except Exception:
                logger.warning("failed to resume audio output", exc_info=True)
