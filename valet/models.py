"""
Domain models for the valet operations service.

API payloads use camelCase aliases; either the alias or the field name is
accepted on input.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HelpRequestStatus(StrEnum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    COMPLETED = "completed"
    EXPIRED = "expired"


class HelpResponseStatus(StrEnum):
    DISPATCHED = "dispatched"
    COMPLETED = "completed"


class ReportKind(StrEnum):
    SHIFT_REPORT = "shift-report"
    INCIDENT_REPORT = "incident-report"
    TAX_PAYMENT = "tax-payment"


class Location(CamelModel):
    id: int
    name: str
    active: bool = True


class HelpRequest(CamelModel):
    id: int
    requesting_location: str
    request_type: str
    description: str
    status: HelpRequestStatus = HelpRequestStatus.ACTIVE
    requested_at: datetime
    resolved_at: datetime | None = None
    completed_at: datetime | None = None
    auto_remove_at: datetime | None = None


class HelpResponse(CamelModel):
    id: int
    help_request_id: int
    responding_location_name: str
    message: str = ""
    status: HelpResponseStatus = HelpResponseStatus.DISPATCHED
    attendants_offered: int = 1
    responded_at: datetime
    completed_at: datetime | None = None


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscription(CamelModel):
    id: int
    endpoint: str
    keys: PushKeys
    location_name: str | None = None
    active: bool = True
    created_at: datetime

    def subscription_info(self) -> dict:
        # shape expected by pywebpush
        return {"endpoint": self.endpoint, "keys": self.keys.model_dump()}


class EmployeeHours(BaseModel):
    name: str
    hours: float = Field(ge=0)


class ShiftReportFields(CamelModel):
    location_id: int
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    shift: str
    manager: str
    total_cars: int
    complimentary_cars: int = 0
    credit_transactions: int
    total_credit_sales: float
    total_receipts: int = 0
    total_cash_collected: float = 0.0
    company_cash_turn_in: float = 0.0
    total_turn_in: float = 0.0
    over_short: float = 0.0
    total_job_hours: float = 0.0
    cc_tips: float = 0.0
    employees: list[EmployeeHours] = Field(default_factory=list)
    notes: str | None = None
    incidents: str | None = None


class ShiftReport(ShiftReportFields):
    id: int
    created_at: datetime
    updated_at: datetime | None = None


class IncidentReportFields(CamelModel):
    location_id: int | None = None
    customer_name: str
    incident_date: str
    description: str
    contact: str | None = None


class IncidentReport(IncidentReportFields):
    id: int
    created_at: datetime


class TaxPaymentFields(CamelModel):
    employee_key: str | None = None
    location_id: int | None = None
    amount: float
    payment_date: str
    notes: str | None = None


class TaxPayment(TaxPaymentFields):
    id: int
    created_at: datetime


class PayrollData(CamelModel):
    hours_worked: float = 0.0
    credit_card_commission: float = 0.0
    credit_card_tips: float = 0.0
    cash_commission: float = 0.0
    cash_tips: float = 0.0
    receipt_commission: float = 0.0
    receipt_tips: float = 0.0
    total_earnings: float = 0.0
    money_owed: float = 0.0
    taxes_owed: float = 0.0


class Employee(CamelModel):
    id: int
    key: str
    full_name: str
    is_active: bool = True
    is_shift_leader: bool = False
    phone: str | None = None
    email: str | None = None
    hire_date: str
    notes: str | None = None
    termination_date: str | None = None
    payroll_data: PayrollData | None = None


class AdminSession(BaseModel):
    token: str
    expires_at: datetime
