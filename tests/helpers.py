import asyncio
from datetime import UTC, datetime, timedelta

ADMIN_PASSWORD = "valet-admin"


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks and done-callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FreezegunSleeper:
    """
    Fake sleep function that advances only when the test manually ticks
    freezegun time forward.
    """

    def __init__(self, frozen_time):
        self.frozen_time = frozen_time
        self._event = asyncio.Event()

    def tick(self, *, delta: timedelta) -> None:
        before = datetime.now(UTC)
        self.frozen_time.tick(delta=delta)
        after = datetime.now(UTC)
        _p(
            f"[time] ticked by {delta}. {before.isoformat()} -> {after.isoformat()}"
        )
        self._event.set()

    async def sleep(self, seconds: float) -> None:
        start = datetime.now(UTC)
        deadline = start + timedelta(seconds=seconds)

        while datetime.now(UTC) < deadline:
            await self._event.wait()
            self._event.clear()


def shift_report_body(**overrides) -> dict:
    body = {
        "locationId": 3,
        "date": "2025-07-02",
        "shift": "Dinner",
        "manager": "Dana Ruiz",
        "totalCars": 40,
        "complimentaryCars": 2,
        "creditTransactions": 10,
        "totalCreditSales": 150.0,
        "totalReceipts": 38,
        "totalCashCollected": 420.0,
        "companyCashTurnIn": 440.0,
        "totalTurnIn": 590.0,
        "overShort": -20.0,
        "totalJobHours": 12.0,
        "ccTips": 20.0,
        "employees": [
            {"name": "Marco Ito", "hours": 6.0},
            {"name": "Lena Park", "hours": 6.0},
        ],
    }
    body.update(overrides)
    return body
