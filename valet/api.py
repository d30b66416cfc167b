import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    Response,
)
from pydantic import BaseModel, Field
from werkzeug.security import check_password_hash

from valet.config import Settings
from valet.database import InMemoryKeyValueDatabase
from valet.models import (
    AdminSession,
    CamelModel,
    Employee,
    HelpRequest,
    HelpResponse,
    IncidentReport,
    IncidentReportFields,
    Location,
    PushKeys,
    PushSubscription,
    ShiftReport,
    ShiftReportFields,
    TaxPayment,
    TaxPaymentFields,
)
from valet.notifier import PushDeliveryError, build_help_request_payload, send_push
from valet.payroll import (
    CsvImportResult,
    audit_report_text,
    import_employees_csv,
    validate_all,
)
from valet.reconciliation import ReconciliationResult, reconcile
from valet.repair import RawEmployeesRow, RepairResult, repair_rows
from valet.sound import alert_wav
from valet.square import SquareClient, SquareError

logger = logging.getLogger(__name__)

router = APIRouter()

Database = InMemoryKeyValueDatabase[str, Any]

RECENT_RESPONSE_WINDOW = timedelta(minutes=30)

SEED_LOCATIONS = (
    "The Capital Grille",
    "Bob's Steak and Chop House",
    "Truluck's",
    "BOA Steakhouse",
)


class HelpRequestCreate(CamelModel):
    requesting_location: str = Field(min_length=1)
    request_type: str = Field(min_length=1)
    description: str = Field(min_length=1)


class HelpResponseCreate(CamelModel):
    help_request_id: int
    responding_location_name: str = Field(min_length=1)
    message: str = ""
    attendants_offered: int = Field(default=1, ge=1)


class HelpRequestWithResponses(HelpRequest):
    responses: list[HelpResponse] = Field(default_factory=list)


class PushSubscriptionCreate(CamelModel):
    endpoint: str = Field(min_length=1)
    keys: PushKeys
    location_name: str | None = None


class PushSubscriptionDelete(BaseModel):
    endpoint: str


class CsvUpload(CamelModel):
    csv_data: str = ""


class AdminLogin(BaseModel):
    password: str


class RepairRequest(BaseModel):
    rows: list[RawEmployeesRow]


def _db(request: Request) -> Database:
    return request.app.state.database


def _now(request: Request) -> datetime:
    return request.app.state.now_fn()


def require_admin(
    request: Request, x_admin_token: str | None = Header(default=None)
) -> AdminSession:
    db = _db(request)
    db.purge_expired_admin_sessions(_now(request))
    session = db.get(f"admin_session:{x_admin_token}") if x_admin_token else None
    if not isinstance(session, AdminSession):
        raise HTTPException(status_code=401, detail="Admin authentication required")
    return session


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/api/locations")
async def list_locations(request: Request) -> list[Location]:
    return sorted(_db(request).of_type(Location), key=lambda loc: loc.id)


# ---------------------------------------------------------------------------
# Help requests


@router.post("/api/help-requests", status_code=201)
async def create_help_request(
    body: HelpRequestCreate, request: Request
) -> HelpRequest:
    db = _db(request)
    help_request = HelpRequest(
        id=db.next_id("help_request"),
        requesting_location=body.requesting_location,
        request_type=body.request_type,
        description=body.description,
        requested_at=_now(request),
    )
    db.put(f"help_request:{help_request.id}", help_request)
    logger.info(
        "help request %s created by %s",
        help_request.id,
        help_request.requesting_location,
    )

    await fan_out_push(request.app, help_request)
    return help_request


async def fan_out_push(app: FastAPI, help_request: HelpRequest) -> int:
    """
    Push the new request to every active subscription. Delivery failures are
    logged; subscriptions the push service reports as gone are deactivated.
    """
    settings: Settings = app.state.settings
    if not settings.push_enabled:
        logger.info("push disabled; skipping fan-out for %s", help_request.id)
        return 0

    db: Database = app.state.database
    subscriptions = [s for s in db.of_type(PushSubscription) if s.active]
    payload = build_help_request_payload(help_request, settings.app_url)

    async def _deliver(subscription: PushSubscription) -> bool:
        try:
            await send_push(subscription, payload, settings)
        except PushDeliveryError as exc:
            logger.warning("push delivery failed: %s", exc)
            if exc.subscription_gone:
                subscription.active = False
            return False
        except Exception:
            logger.warning(
                "push to %s failed", subscription.endpoint[:50], exc_info=True
            )
            return False
        return True

    results = await asyncio.gather(*(_deliver(s) for s in subscriptions))
    sent = sum(results)
    logger.info(
        "sent help request %s to %d/%d subscribers",
        help_request.id,
        sent,
        len(subscriptions),
    )
    return sent


@router.get("/api/help-requests/active")
async def list_active_help_requests(
    request: Request,
) -> list[HelpRequestWithResponses]:
    db = _db(request)
    now = _now(request)
    expired = db.expire_stale_help_requests(now)
    if expired:
        logger.info("expired %d stale help requests", expired)

    return [
        HelpRequestWithResponses(
            **r.model_dump(), responses=db.responses_for(r.id)
        )
        for r in db.visible_help_requests(now)
    ]


@router.post("/api/help-requests/respond", status_code=201)
async def respond_to_help_request(
    body: HelpResponseCreate, request: Request
) -> HelpResponse:
    db = _db(request)
    if not isinstance(db.get(f"help_request:{body.help_request_id}"), HelpRequest):
        raise HTTPException(status_code=404, detail="Help request not found")

    responded_at = _now(request)
    response = db.record_response_if_open(
        body.help_request_id,
        lambda response_id: HelpResponse(
            id=response_id,
            help_request_id=body.help_request_id,
            responding_location_name=body.responding_location_name,
            message=body.message,
            attendants_offered=body.attendants_offered,
            responded_at=responded_at,
        ),
        responded_at,
    )
    if response is None:
        raise HTTPException(
            status_code=409, detail="Help request is no longer open"
        )

    logger.info(
        "%s dispatched %d attendant(s) to help request %s",
        response.responding_location_name,
        response.attendants_offered,
        response.help_request_id,
    )
    return response


@router.get("/api/help-responses/recent")
async def list_recent_help_responses(request: Request) -> list[HelpResponse]:
    cutoff = _now(request) - RECENT_RESPONSE_WINDOW
    recent = [
        r for r in _db(request).of_type(HelpResponse) if r.responded_at >= cutoff
    ]
    return sorted(recent, key=lambda r: r.responded_at, reverse=True)


@router.patch("/api/help-requests/{help_request_id}/complete")
async def complete_help_request(
    help_request_id: int, request: Request
) -> HelpRequest:
    completed = _db(request).complete_help_request(help_request_id, _now(request))
    if completed is None:
        raise HTTPException(status_code=404, detail="Help request not found")
    return completed


# ---------------------------------------------------------------------------
# Push subscriptions


@router.get("/api/push-subscription/vapid-public-key")
async def vapid_public_key(request: Request) -> dict[str, str]:
    return {"publicKey": request.app.state.settings.vapid_public_key}


@router.post("/api/push-subscription", status_code=201)
async def register_push_subscription(
    body: PushSubscriptionCreate, request: Request
) -> PushSubscription:
    db = _db(request)
    existing = next(
        (s for s in db.of_type(PushSubscription) if s.endpoint == body.endpoint),
        None,
    )
    if existing is not None:
        existing.keys = body.keys
        existing.location_name = body.location_name
        existing.active = True
        return existing

    subscription = PushSubscription(
        id=db.next_id("push_subscription"),
        endpoint=body.endpoint,
        keys=body.keys,
        location_name=body.location_name,
        created_at=_now(request),
    )
    db.put(f"push_subscription:{subscription.id}", subscription)
    return subscription


@router.delete("/api/push-subscription")
async def unregister_push_subscription(
    body: PushSubscriptionDelete, request: Request
) -> dict[str, bool]:
    db = _db(request)
    match = next(
        (s for s in db.of_type(PushSubscription) if s.endpoint == body.endpoint),
        None,
    )
    if match is None:
        raise HTTPException(status_code=404, detail="Push subscription not found")
    db.delete(f"push_subscription:{match.id}")
    return {"success": True}


# ---------------------------------------------------------------------------
# Reports


def _get_shift_report(db: Database, report_id: int) -> ShiftReport:
    report = db.get(f"shift_report:{report_id}")
    if not isinstance(report, ShiftReport):
        raise HTTPException(status_code=404, detail="Shift report not found")
    return report


@router.get("/api/shift-reports")
async def list_shift_reports(request: Request) -> list[ShiftReport]:
    return sorted(_db(request).of_type(ShiftReport), key=lambda r: r.id)


@router.get("/api/shift-reports/location/{location_id}")
async def list_shift_reports_by_location(
    location_id: int, request: Request
) -> list[ShiftReport]:
    return [
        r
        for r in sorted(_db(request).of_type(ShiftReport), key=lambda r: r.id)
        if r.location_id == location_id
    ]


@router.get("/api/shift-reports/{report_id}")
async def get_shift_report(report_id: int, request: Request) -> ShiftReport:
    return _get_shift_report(_db(request), report_id)


@router.post("/api/shift-reports", status_code=201)
async def create_shift_report(
    body: ShiftReportFields, request: Request
) -> ShiftReport:
    db = _db(request)
    report = ShiftReport(
        **body.model_dump(), id=db.next_id("shift_report"), created_at=_now(request)
    )
    db.put(f"shift_report:{report.id}", report)
    return report


@router.put("/api/shift-reports/{report_id}")
async def update_shift_report(
    report_id: int, body: ShiftReportFields, request: Request
) -> ShiftReport:
    db = _db(request)
    current = _get_shift_report(db, report_id)
    updated = ShiftReport(
        **body.model_dump(),
        id=current.id,
        created_at=current.created_at,
        updated_at=_now(request),
    )
    db.put(f"shift_report:{report_id}", updated)
    return updated


@router.delete("/api/shift-reports/{report_id}", status_code=204)
async def delete_shift_report(report_id: int, request: Request) -> Response:
    if not _db(request).delete(f"shift_report:{report_id}"):
        raise HTTPException(status_code=404, detail="Shift report not found")
    return Response(status_code=204)


@router.get("/api/incident-reports")
async def list_incident_reports(request: Request) -> list[IncidentReport]:
    return sorted(_db(request).of_type(IncidentReport), key=lambda r: r.id)


@router.post("/api/incident-reports", status_code=201)
async def create_incident_report(
    body: IncidentReportFields, request: Request
) -> IncidentReport:
    db = _db(request)
    report = IncidentReport(
        **body.model_dump(),
        id=db.next_id("incident_report"),
        created_at=_now(request),
    )
    db.put(f"incident_report:{report.id}", report)
    return report


@router.get("/api/tax-payments")
async def list_tax_payments(request: Request) -> list[TaxPayment]:
    return sorted(_db(request).of_type(TaxPayment), key=lambda p: p.id)


@router.post("/api/tax-payments", status_code=201)
async def create_tax_payment(
    body: TaxPaymentFields, request: Request
) -> TaxPayment:
    db = _db(request)
    payment = TaxPayment(
        **body.model_dump(), id=db.next_id("tax_payment"), created_at=_now(request)
    )
    db.put(f"tax_payment:{payment.id}", payment)
    return payment


# ---------------------------------------------------------------------------
# Square


@router.get("/api/square/reconcile/{report_id}")
async def reconcile_shift_report(
    report_id: int, request: Request
) -> ReconciliationResult:
    square: SquareClient | None = request.app.state.square
    if square is None:
        raise HTTPException(status_code=503, detail="Square integration not configured")

    report = _get_shift_report(_db(request), report_id)
    try:
        sales = await square.get_daily_sales(report.date)
    except SquareError as exc:
        logger.warning(
            "Square reconciliation failed for report %s", report_id, exc_info=True
        )
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return reconcile(sales, report)


# ---------------------------------------------------------------------------
# Employees, CSV and admin


@router.get("/api/employees")
async def list_employees(request: Request) -> list[Employee]:
    return sorted(_db(request).of_type(Employee), key=lambda e: e.full_name)


def _import_csv(
    request: Request, body: CsvUpload, *, with_payroll: bool
) -> CsvImportResult:
    if not body.csv_data.strip():
        raise HTTPException(status_code=400, detail="No CSV data provided")
    return import_employees_csv(
        _db(request), body.csv_data, with_payroll=with_payroll
    )


@router.post("/api/csv/employees", dependencies=[Depends(require_admin)])
async def upload_employees_csv(
    body: CsvUpload, request: Request
) -> CsvImportResult:
    return _import_csv(request, body, with_payroll=False)


@router.post("/api/csv/payroll", dependencies=[Depends(require_admin)])
async def upload_payroll_csv(
    body: CsvUpload, request: Request
) -> CsvImportResult:
    return _import_csv(request, body, with_payroll=True)


@router.post("/api/admin/login")
async def admin_login(body: AdminLogin, request: Request) -> dict[str, str]:
    settings: Settings = request.app.state.settings
    if not settings.admin_password_hash or not check_password_hash(
        settings.admin_password_hash, body.password
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    db = _db(request)
    db.purge_expired_admin_sessions(_now(request))
    session = AdminSession(
        token=secrets.token_urlsafe(32),
        expires_at=_now(request) + timedelta(minutes=settings.admin_session_minutes),
    )
    db.put(f"admin_session:{session.token}", session)
    return {"token": session.token, "expiresAt": session.expires_at.isoformat()}


@router.get("/api/admin/payroll-audit", dependencies=[Depends(require_admin)])
async def payroll_audit(request: Request) -> dict[str, Any]:
    db = _db(request)
    names = {loc.id: loc.name for loc in db.of_type(Location)}
    summary = validate_all(db.of_type(ShiftReport), names)
    return {
        "summary": summary.model_dump(mode="json", by_alias=True),
        "report": audit_report_text(summary, _now(request)),
    }


@router.post("/api/admin/repair/employees", dependencies=[Depends(require_admin)])
async def repair_employee_columns(
    body: RepairRequest, request: Request
) -> RepairResult:
    db = _db(request)
    result = repair_rows(body.rows)
    for report_id, employees in result.repaired.items():
        report = db.get(f"shift_report:{report_id}")
        if isinstance(report, ShiftReport):
            report.employees = employees
            report.updated_at = _now(request)
    return result


@lru_cache(maxsize=1)
def _alert_sound() -> bytes:
    return alert_wav()


@router.get("/api/alert-sound.wav")
async def alert_sound() -> Response:
    return Response(content=_alert_sound(), media_type="audio/wav")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    square: SquareClient | None = app.state.square
    if square is not None:
        await square.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Valet Operations API", lifespan=_lifespan)
    db: Database = InMemoryKeyValueDatabase()
    for name in SEED_LOCATIONS:
        location = Location(id=db.next_id("location"), name=name)
        db.put(f"location:{location.id}", location)

    app.state.settings = settings
    app.state.database = db
    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.square = SquareClient.from_settings(settings)

    app.include_router(router)
    return app
