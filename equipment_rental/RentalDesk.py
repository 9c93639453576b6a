import logging
import os
from contextlib import asynccontextmanager
from datetime import date

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from starlette.middleware.sessions import SessionMiddleware

from dotenv import load_dotenv

load_dotenv()

from db.base import Base
from db.deps import get_db
from db.session import engine_rental
from models.rental_models import Customer, Equipment
from schemas.customers import CustomerCreate, CustomerUpdate
from schemas.equipment import EquipmentUpsert, MaintenanceUpdate
from schemas.rentals import AddPaymentRequest, CreateRentalDto, ReturnRequest
from services.audit_service import log_audit
from services.billing import ReturnTerms
from services.customer_service import (
    create_customer,
    customer_stats,
    get_customer_or_raise,
    list_customers,
    serialize_customer,
    soft_delete_customer,
    update_customer,
)
from services.equipment_service import (
    apply_equipment_fields,
    create_equipment,
    delete_equipment,
    get_equipment_or_raise,
    list_equipment,
    serialize_equipment,
)
from services.errors import InvalidCredentials, RentalDeskError, TooManyAttempts, TransactionConflict
from services.inventory_service import inventory_summary, reconcile_on_rent, set_maintenance
from services.rental_service import (
    Actor,
    add_payment,
    create_rental,
    list_rentals,
    load_rental,
    preview_return,
    process_return,
    serialize_rental,
)
from services.report_service import ViewCache, build_invoice, dashboard_analytics
from services.storage_service import UPLOADS_DIR, upload_data_url, upload_file
from services.user_access_service import (
    authenticate,
    check_login_guard,
    create_session,
    get_session,
    normalize_email,
    record_login_failure,
    record_login_success,
    remove_session,
)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if _env_flag("DB_CREATE_ALL", "true"):
        Base.metadata.create_all(engine_rental)
    yield


app = FastAPI(title="Equipment Rental Desk", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)
_APP_SESSION_SECRET = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
if len(_APP_SESSION_SECRET) >= 32:
    app.add_middleware(
        SessionMiddleware,
        secret_key=_APP_SESSION_SECRET,
        session_cookie="equipment_rental_session",
        same_site="lax",
        https_only=False,
    )

app.mount("/uploads", StaticFiles(directory=str(UPLOADS_DIR), check_dir=False), name="uploads")

AUTH_LOGGER = logging.getLogger("equipment_rental.auth")
APP_LOGGER = logging.getLogger("equipment_rental.api")
VIEW_CACHE = ViewCache(ttl_seconds=int(os.environ.get("VIEW_CACHE_TTL_SECONDS") or "60"))


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    password: str | None = None


class DataUrlUpload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dataUrl: str
    fileName: str | None = None


@app.exception_handler(RentalDeskError)
async def handle_rental_desk_error(request: Request, exc: RentalDeskError):
    headers = {}
    if isinstance(exc, TooManyAttempts):
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500 or exc.retryable:
        APP_LOGGER.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__, "retryable": exc.retryable},
        headers=headers or None,
    )


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _audit_auth_event(db: Session, *, action: str, details: str, user_id: int | None = None) -> None:
    try:
        log_audit(db, "Auth", int(user_id or 0), action, details, user_id=user_id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        AUTH_LOGGER.warning("Could not write auth audit action=%s error=%s", action, exc)


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_store = request.scope.get("session")
    if isinstance(session_store, dict):
        session_from_cookie = session_store.get("user")
        if isinstance(session_from_cookie, dict):
            return dict(session_from_cookie)
    session_from_token = get_session(session_token)
    if session_from_token and isinstance(session_store, dict):
        session_store["user"] = dict(session_from_token)
    return session_from_token


def require_user(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")) -> dict:
    session = _get_active_session(request, x_session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def require_admin(user: dict = Depends(require_user)) -> dict:
    if str(user.get("role") or "").strip() != "Admin":
        raise HTTPException(status_code=403, detail="Admin role required.")
    return user


def _actor(user: dict) -> Actor:
    return Actor(user_id=user.get("userID"), display_name=user.get("displayName"))


def _commit_write(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        APP_LOGGER.warning("Write conflicted with a concurrent change: %s", exc)
        raise TransactionConflict("The record was changed by another request; please retry.") from exc
    VIEW_CACHE.invalidate()


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = AuthLoginRequest.model_validate(payload)
    except ValidationError:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=invalid_payload")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    email = normalize_email(parsed.email)
    if not email or not parsed.password:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=missing_identity")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    account_key = f"user:{email}"
    try:
        check_login_guard(client_ip, account_key)
    except TooManyAttempts as exc:
        _audit_auth_event(db, action="LoginThrottled", details=f"ip={client_ip} key={account_key} retry_after={exc.retry_after}")
        AUTH_LOGGER.warning("Login throttled ip=%s key=%s retry_after=%s", client_ip, account_key, exc.retry_after)
        raise

    try:
        session_payload = authenticate(db, email, parsed.password)
    except InvalidCredentials:
        record_login_failure(client_ip, account_key)
        _audit_auth_event(db, action="LoginFailed", details=f"ip={client_ip} key={account_key}")
        AUTH_LOGGER.warning("Login failed ip=%s key=%s", client_ip, account_key)
        raise

    token = create_session(session_payload)
    if isinstance(request.scope.get("session"), dict):
        request.session["user"] = dict(session_payload)
    record_login_success(account_key)
    _audit_auth_event(db, action="LoginSuccess", details=f"ip={client_ip} key={account_key}", user_id=session_payload["userID"])
    AUTH_LOGGER.info("Login success ip=%s key=%s user_id=%s", client_ip, account_key, session_payload["userID"])
    return {"sessionToken": token, "user": session_payload}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    if isinstance(request.scope.get("session"), dict):
        request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(user: dict = Depends(require_user)):
    return {"user": user}


# Customers


@app.get("/api/customers")
def get_customers(
    include_deleted: bool = Query(False, alias="includeDeleted"),
    db: Session = Depends(get_db),
    user: dict = Depends(require_user),
):
    return [serialize_customer(customer) for customer in list_customers(db, include_deleted=include_deleted)]


@app.post("/api/customers")
def post_customer(payload: CustomerCreate, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    customer = create_customer(db, payload.model_dump(exclude_unset=True))
    db.flush()
    log_audit(db, "Customer", customer.CustomerID, "CreateCustomer", customer.Name, user_id=user.get("userID"))
    _commit_write(db)
    return serialize_customer(customer)


@app.get("/api/customers/{customer_id}")
def get_customer(customer_id: int, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    return serialize_customer(get_customer_or_raise(db, customer_id))


@app.put("/api/customers/{customer_id}")
def put_customer(customer_id: int, payload: CustomerUpdate, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    customer = update_customer(db, customer_id, payload.model_dump(exclude_unset=True))
    log_audit(db, "Customer", customer_id, "UpdateCustomer", None, user_id=user.get("userID"))
    _commit_write(db)
    return serialize_customer(customer)


@app.delete("/api/customers/{customer_id}")
def remove_customer(customer_id: int, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    soft_delete_customer(db, customer_id)
    log_audit(db, "Customer", customer_id, "DeleteCustomer", "tombstoned", user_id=user.get("userID"))
    _commit_write(db)
    return {"message": "Deleted"}


@app.get("/api/customers/{customer_id}/rentals")
def get_customer_rentals(customer_id: int, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    get_customer_or_raise(db, customer_id)
    return [serialize_rental(rental) for rental in list_rentals(db, customer_id=customer_id)]


@app.get("/api/customers/{customer_id}/stats")
def get_customer_stats(customer_id: int, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    get_customer_or_raise(db, customer_id)
    return customer_stats(list_rentals(db, customer_id=customer_id))


# Equipment


@app.get("/api/equipment")
def get_equipment(db: Session = Depends(get_db), user: dict = Depends(require_user)):
    return [serialize_equipment(row) for row in list_equipment(db)]


@app.get("/api/equipment/summary")
def get_equipment_summary(db: Session = Depends(get_db), user: dict = Depends(require_user)):
    return VIEW_CACHE.get_or_build("equipment-summary", lambda: inventory_summary(list_equipment(db)))


@app.get("/api/equipment/drift")
def get_equipment_drift(db: Session = Depends(get_db), user: dict = Depends(require_admin)):
    drift = reconcile_on_rent(db)
    if drift:
        APP_LOGGER.warning("On-rent drift detected lines=%s", len(drift))
    return {"ok": not drift, "drift": drift}


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    return serialize_equipment(get_equipment_or_raise(db, equipment_id))


@app.post("/api/equipment")
def post_equipment(payload: EquipmentUpsert, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    equipment = create_equipment(db, payload.model_dump(exclude_unset=True))
    db.flush()
    log_audit(db, "Equipment", equipment.EquipmentID, "CreateEquipment", equipment.Name, user_id=user.get("userID"))
    _commit_write(db)
    return serialize_equipment(equipment)


@app.put("/api/equipment/{equipment_id}")
def put_equipment(equipment_id: int, payload: EquipmentUpsert, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    equipment = get_equipment_or_raise(db, equipment_id)
    values = {field: value for field, value in payload.model_dump(exclude_unset=True).items() if field != "equipmentID"}
    apply_equipment_fields(equipment, values)
    log_audit(db, "Equipment", equipment_id, "UpdateEquipment", None, user_id=user.get("userID"))
    _commit_write(db)
    return serialize_equipment(equipment)


@app.delete("/api/equipment/{equipment_id}")
def remove_equipment(equipment_id: int, db: Session = Depends(get_db), user: dict = Depends(require_admin)):
    delete_equipment(db, equipment_id)
    log_audit(db, "Equipment", equipment_id, "DeleteEquipment", None, user_id=user.get("userID"))
    _commit_write(db)
    return {"message": "Deleted"}


@app.post("/api/equipment/{equipment_id}/maintenance")
def post_equipment_maintenance(
    equipment_id: int,
    payload: MaintenanceUpdate,
    db: Session = Depends(get_db),
    user: dict = Depends(require_user),
):
    equipment = set_maintenance(db, equipment_id, payload.maintenanceCount)
    log_audit(db, "Equipment", equipment_id, "SetMaintenance", f"count={payload.maintenanceCount}", user_id=user.get("userID"))
    _commit_write(db)
    return serialize_equipment(equipment)


@app.post("/api/uploads/{kind}")
def post_upload(kind: str, file: UploadFile = File(...), user: dict = Depends(require_user)):
    url = upload_file(file.filename, file.file.read(), file.content_type, kind)
    return {"url": url}


@app.post("/api/uploads/{kind}/data-url")
def post_data_url_upload(kind: str, payload: DataUrlUpload, user: dict = Depends(require_user)):
    return {"url": upload_data_url(payload.dataUrl, kind, payload.fileName)}


# Rentals


@app.get("/api/rentals")
def get_rentals(
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    user: dict = Depends(require_user),
):
    rentals = list_rentals(db)
    if status:
        rentals = [rental for rental in rentals if rental.Status == status]
    return [serialize_rental(rental) for rental in rentals]


@app.post("/api/rentals")
def post_rental(payload: CreateRentalDto, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    rental = create_rental(
        db,
        customer_id=payload.customerID,
        rental_address=payload.rentalAddress,
        start_date=payload.startDate,
        items=[(item.equipmentID, item.quantity) for item in payload.items],
        advance_payment=payload.advancePayment,
        notes=payload.notes,
        actor=_actor(user),
    )
    VIEW_CACHE.invalidate()
    return serialize_rental(rental)


@app.get("/api/rentals/{rental_id}")
def get_rental(rental_id: int, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    return serialize_rental(load_rental(db, rental_id))


@app.get("/api/rentals/{rental_id}/return-preview")
def get_return_preview(
    rental_id: int,
    return_date: date | None = Query(None, alias="returnDate"),
    db: Session = Depends(get_db),
    user: dict = Depends(require_user),
):
    return preview_return(db, rental_id, return_date or date.today())


@app.post("/api/rentals/{rental_id}/return")
def post_return(rental_id: int, payload: ReturnRequest, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    actor = _actor(user)
    terms = ReturnTerms(
        return_date=payload.returnDate,
        payment_made=payload.paymentMade,
        credit_to_apply=payload.creditToApply,
        refund_amount=payload.refundAmount,
        notes=payload.notes,
        actor_name=actor.display_name,
    )
    rental, plan = process_return(db, rental_id, terms, actor)
    VIEW_CACHE.invalidate()
    body = serialize_rental(rental)
    body["settlement"] = {
        "durationDays": plan.quote.duration_days,
        "totalAmount": plan.quote.amount,
        "creditApplied": plan.credit_applied,
        "balance": plan.balance,
        "creditSources": [
            {"rentalID": draw.source_rental_id, "amount": draw.amount} for draw in plan.credit_draws
        ],
    }
    return body


@app.post("/api/rentals/{rental_id}/payments")
def post_payment(rental_id: int, payload: AddPaymentRequest, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    rental = add_payment(db, rental_id, payload.amount, payload.paymentDate, payload.notes, _actor(user))
    VIEW_CACHE.invalidate()
    return serialize_rental(rental)


@app.get("/api/rentals/{rental_id}/invoice")
def get_invoice(rental_id: int, db: Session = Depends(get_db), user: dict = Depends(require_user)):
    rental = load_rental(db, rental_id)
    customer = db.get(Customer, rental.CustomerID)
    return build_invoice(rental, customer)


# Dashboard


@app.get("/api/dashboard")
def get_dashboard(db: Session = Depends(get_db), user: dict = Depends(require_user)):
    def build():
        customers = db.execute(select(Customer)).scalars().all()
        equipment = db.execute(select(Equipment)).scalars().all()
        return dashboard_analytics(customers, list_rentals(db), equipment)

    return VIEW_CACHE.get_or_build("dashboard", build)
