"""
Field-by-field comparison of a Square daily summary against a shift report.
"""

from typing import Protocol

from pydantic import Field

from valet.models import CamelModel
from valet.square import DailySales

CURRENCY_TOLERANCE = 0.01


class CreditTotals(Protocol):
    credit_transactions: int
    total_credit_sales: float
    cc_tips: float


class Differences(CamelModel):
    credit_transactions: int
    credit_sales: float
    tips: float


class ReconciliationResult(CamelModel):
    match: bool
    discrepancies: list[str] = Field(default_factory=list)
    differences: Differences
    square_data: DailySales


def _cents(value: float) -> float:
    return round(value * 100) / 100


def reconcile(square: DailySales, report: CreditTotals) -> ReconciliationResult:
    discrepancies: list[str] = []
    report_tips = report.cc_tips or 0.0

    transactions_diff = square.card_transactions - report.credit_transactions
    if transactions_diff != 0:
        discrepancies.append(
            f"Credit transactions: Square shows {square.card_transactions}, "
            f"shift report shows {report.credit_transactions} "
            f"(difference: {transactions_diff})"
        )

    sales_diff = _cents(square.card_sales - report.total_credit_sales)
    if abs(sales_diff) > CURRENCY_TOLERANCE:
        discrepancies.append(
            f"Credit sales: Square shows ${square.card_sales:.2f}, "
            f"shift report shows ${report.total_credit_sales:.2f} "
            f"(difference: ${sales_diff:.2f})"
        )

    tips_diff = _cents(square.tips - report_tips)
    if abs(tips_diff) > CURRENCY_TOLERANCE:
        discrepancies.append(
            f"Credit card tips: Square shows ${square.tips:.2f}, "
            f"shift report shows ${report_tips:.2f} "
            f"(difference: ${tips_diff:.2f})"
        )

    return ReconciliationResult(
        match=not discrepancies,
        discrepancies=discrepancies,
        differences=Differences(
            credit_transactions=transactions_diff,
            credit_sales=sales_diff,
            tips=tips_diff,
        ),
        square_data=square,
    )
