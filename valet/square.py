import logging

import httpx
from pydantic import Field

from valet.config import Settings
from valet.models import CamelModel

logger = logging.getLogger(__name__)

BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}
SQUARE_VERSION = "2024-10-17"


class SquareError(Exception):
    pass


class SquareTransaction(CamelModel):
    id: str
    amount: float
    tip_amount: float = 0.0
    created_at: str = ""
    card_brand: str | None = None
    last_four: str | None = None


class DailySales(CamelModel):
    date: str
    total_sales: float = 0.0
    card_transactions: int = 0
    card_sales: float = 0.0
    tips: float = 0.0
    transactions: list[SquareTransaction] = Field(default_factory=list)


def _dollars(money: dict | None) -> float:
    if not money or not money.get("amount"):
        return 0.0
    return money["amount"] / 100


def _to_transaction(payment: dict) -> SquareTransaction:
    card = (payment.get("card_details") or {}).get("card") or {}
    return SquareTransaction(
        id=payment.get("id", ""),
        amount=_dollars(payment.get("amount_money")),
        tip_amount=_dollars(payment.get("tip_money")),
        created_at=payment.get("created_at", ""),
        card_brand=card.get("card_brand"),
        last_four=card.get("last_4"),
    )


def summarize_payments(payments: list[dict], date: str) -> DailySales:
    """Only COMPLETED payments count towards the day's totals."""
    sales = DailySales(date=date)
    for payment in payments:
        if payment.get("status") != "COMPLETED":
            continue
        txn = _to_transaction(payment)
        sales.total_sales += txn.amount
        sales.card_transactions += 1
        sales.card_sales += txn.amount
        sales.tips += txn.tip_amount
        sales.transactions.append(txn)
    return sales


class SquareClient:
    def __init__(
        self,
        access_token: str,
        location_id: str,
        environment: str = "sandbox",
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.location_id = location_id
        self._client = http_client or httpx.AsyncClient(
            base_url=BASE_URLS.get(environment, BASE_URLS["sandbox"]),
            timeout=10,
        )
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Square-Version": SQUARE_VERSION,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "SquareClient | None":
        if not settings.square_enabled:
            logger.info("Square credentials not configured; integration disabled")
            return None
        return cls(
            settings.square_access_token,
            settings.square_location_id,
            settings.square_environment,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict | None = None) -> dict:
        try:
            resp = await self._client.get(path, params=params, headers=self._headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            raise SquareError(f"Square request {path} failed: {exc}") from exc

    async def list_payments(self, date: str) -> list[dict]:
        params = {
            "location_id": self.location_id,
            "begin_time": f"{date}T00:00:00.000Z",
            "end_time": f"{date}T23:59:59.999Z",
            "sort_order": "ASC",
        }
        payments: list[dict] = []
        while True:
            body = await self._get("/v2/payments", params)
            payments.extend(body.get("payments", []))
            cursor = body.get("cursor")
            if not cursor:
                break
            params = {**params, "cursor": cursor}
        logger.info("fetched %d Square payments for %s", len(payments), date)
        return payments

    async def get_daily_sales(self, date: str) -> DailySales:
        return summarize_payments(await self.list_payments(date), date)

    async def get_transaction(self, payment_id: str) -> SquareTransaction | None:
        try:
            body = await self._get(f"/v2/payments/{payment_id}")
        except SquareError:
            logger.warning("could not load Square payment %s", payment_id, exc_info=True)
            return None
        payment = body.get("payment")
        return _to_transaction(payment) if payment else None
