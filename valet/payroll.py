"""
Payroll calculations and employee CSV ingest.

Each employee on a shift report earns a share of the shift's commission and
tip pool proportional to their hours:

    commission pool = total_cars * commission_rate(location)
    tip pool        = total_cars * per_car_price(location) - total_credit_sales
    share           = hours / total_job_hours
"""

import csv
import io
import logging
from collections import defaultdict
from datetime import UTC, datetime

from pydantic import Field, ValidationError

from valet.database import InMemoryKeyValueDatabase
from valet.models import CamelModel, Employee, PayrollData, ShiftReport

logger = logging.getLogger(__name__)

COMMISSION_RATES = {1: 4, 2: 9, 3: 7, 4: 6, 5: 2}
PER_CAR_PRICES = {1: 15, 2: 15, 3: 15, 4: 13, 5: 15}
DEFAULT_COMMISSION_RATE = 4
DEFAULT_PER_CAR_PRICE = 15


def commission_rate(location_id: int) -> int:
    return COMMISSION_RATES.get(location_id, DEFAULT_COMMISSION_RATE)


def per_car_price(location_id: int) -> int:
    return PER_CAR_PRICES.get(location_id, DEFAULT_PER_CAR_PRICE)


class CalculationResult(CamelModel):
    employee_name: str
    report_id: int
    location_name: str
    date: str
    hours: float
    total_job_hours: float
    hours_percent: float
    commission: float
    tips: float
    total_earnings: float
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class ValidationSummary(CamelModel):
    total_employees: int
    valid_calculations: int
    invalid_calculations: int
    total_earnings: dict[str, float]
    results: list[CalculationResult]
    critical_errors: list[str]


def calculate_earnings(
    report: ShiftReport, employee_name: str, hours: float
) -> CalculationResult:
    errors: list[str] = []

    if hours < 0:
        errors.append(f"Invalid hours: {hours}")
    if report.total_job_hours <= 0:
        errors.append(f"Invalid total job hours: {report.total_job_hours}")

    total_commission = report.total_cars * commission_rate(report.location_id)
    total_tips = (
        report.total_cars * per_car_price(report.location_id)
        - report.total_credit_sales
    )
    hours_percent = (
        hours / report.total_job_hours if report.total_job_hours > 0 else 0.0
    )
    commission = total_commission * hours_percent
    tips = total_tips * hours_percent
    total = commission + tips

    if hours_percent > 1:
        errors.append(
            f"Hours exceed total job hours: {hours} > {report.total_job_hours}"
        )
    if total < 0:
        errors.append(f"Negative earnings calculated: {total}")

    return CalculationResult(
        employee_name=employee_name,
        report_id=report.id,
        location_name=f"Location {report.location_id}",
        date=report.date,
        hours=hours,
        total_job_hours=report.total_job_hours,
        hours_percent=hours_percent,
        commission=commission,
        tips=tips,
        total_earnings=total,
        is_valid=not errors,
        errors=errors,
    )


def validate_all(
    reports: list[ShiftReport], location_names: dict[int, str]
) -> ValidationSummary:
    results: list[CalculationResult] = []
    totals: defaultdict[str, float] = defaultdict(float)
    critical: list[str] = []

    for report in sorted(reports, key=lambda r: r.id):
        for emp in report.employees:
            result = calculate_earnings(report, emp.name, emp.hours)
            result.location_name = location_names.get(
                report.location_id, result.location_name
            )
            results.append(result)
            totals[emp.name] += result.total_earnings
            if not result.is_valid:
                critical.append(
                    f"Report {report.id} - {emp.name}: {', '.join(result.errors)}"
                )

    valid = sum(1 for r in results if r.is_valid)
    return ValidationSummary(
        total_employees=len(totals),
        valid_calculations=valid,
        invalid_calculations=len(results) - valid,
        total_earnings=dict(totals),
        results=results,
        critical_errors=critical,
    )


def audit_report_text(summary: ValidationSummary, generated_at: datetime) -> str:
    checked = summary.valid_calculations + summary.invalid_calculations
    accuracy = summary.valid_calculations / checked * 100 if checked else 100.0
    lines = [
        "=== PAYROLL CALCULATION AUDIT REPORT ===",
        f"Generated: {generated_at.isoformat()}",
        "",
        "SUMMARY:",
        f"- Total Employees: {summary.total_employees}",
        f"- Valid Calculations: {summary.valid_calculations}",
        f"- Invalid Calculations: {summary.invalid_calculations}",
        f"- Accuracy Rate: {accuracy:.2f}%",
        "",
        "EMPLOYEE TOTAL EARNINGS:",
    ]
    for name, total in sorted(
        summary.total_earnings.items(), key=lambda kv: kv[1], reverse=True
    ):
        lines.append(f"{name}: ${total:.2f}")
    if summary.critical_errors:
        lines += ["", "CRITICAL ERRORS REQUIRING ATTENTION:"]
        lines += [f"- {e}" for e in summary.critical_errors]
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# CSV ingest


class CsvRowResult(CamelModel):
    key: str | None = None
    full_name: str | None = None
    status: str | None = None
    error: str | None = None


class CsvImportResult(CamelModel):
    message: str
    success: list[CsvRowResult] = Field(default_factory=list)
    errors: list[CsvRowResult] = Field(default_factory=list)


def parse_csv(csv_data: str) -> list[dict[str, str]]:
    reader = csv.DictReader(io.StringIO(csv_data.strip()))
    rows = []
    for row in reader:
        cleaned = {
            (k or "").strip(): (v or "").strip() for k, v in row.items()
        }
        if any(cleaned.values()):
            rows.append(cleaned)
    return rows


def _flag(value: str) -> bool:
    return value.upper() == "TRUE"


def _payroll_from_row(row: dict[str, str]) -> PayrollData:
    values = {
        name: float(row[info.alias])
        for name, info in PayrollData.model_fields.items()
        if row.get(info.alias)
    }
    return PayrollData(**values)


def _upsert_employee(
    db: InMemoryKeyValueDatabase,
    row: dict[str, str],
    payroll: PayrollData | None,
) -> str:
    key = row.get("key")
    if not key:
        raise ValueError("Missing employee key")
    if not row.get("fullName"):
        raise ValueError("Missing fullName")

    existing = next((e for e in db.of_type(Employee) if e.key == key), None)
    if existing is None:
        employee = Employee(
            id=db.next_id("employee"),
            key=key,
            full_name=row["fullName"],
            is_active=_flag(row.get("isActive", "TRUE")),
            is_shift_leader=_flag(row.get("isShiftLeader", "")),
            phone=row.get("phone") or None,
            email=row.get("email") or None,
            hire_date=row.get("hireDate")
            or datetime.now(UTC).date().isoformat(),
            notes=row.get("notes") or None,
            payroll_data=payroll,
        )
        db.put(f"employee:{employee.id}", employee)
        return "created"

    existing.full_name = row["fullName"]
    existing.is_active = _flag(row.get("isActive", "TRUE"))
    existing.is_shift_leader = _flag(row.get("isShiftLeader", ""))
    existing.phone = row.get("phone") or None
    existing.email = row.get("email") or None
    existing.hire_date = row.get("hireDate") or existing.hire_date
    existing.notes = row.get("notes") or existing.notes
    if payroll is not None:
        existing.payroll_data = payroll
    return "updated"


def import_employees_csv(
    db: InMemoryKeyValueDatabase, csv_data: str, *, with_payroll: bool = False
) -> CsvImportResult:
    """
    Upsert employees by key. A failing row is reported and does not stop
    the remaining rows.
    """
    rows = parse_csv(csv_data)
    result = CsvImportResult(message="")

    for row in rows:
        try:
            payroll = _payroll_from_row(row) if with_payroll else None
            status = _upsert_employee(db, row, payroll)
        except (ValueError, ValidationError) as exc:
            result.errors.append(
                CsvRowResult(
                    key=row.get("key"), full_name=row.get("fullName"), error=str(exc)
                )
            )
            continue
        result.success.append(
            CsvRowResult(key=row["key"], full_name=row["fullName"], status=status)
        )

    result.message = (
        f"Processed {len(rows)} records: {len(result.success)} successful, "
        f"{len(result.errors)} errors"
    )
    logger.info(result.message)
    return result
