from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from config import Settings, get_settings
from db.base import Store
from db.memory import InMemoryStore
from errors import AccountNotFound, EngineError, StoreUnavailable, TransactionNotFound
from logging_setup import setup_logging
from notifications import NotificationCenter
from purchase_engine import get_transaction, process_purchase, retry_distribution
from referral_service import get_tree, register_with_referral, validate_referral_code
from reporting import leaderboard, referral_stats, system_analytics, user_earnings_report


def open_store(settings: Settings) -> Store:
    if not settings.database_url:
        logger.warning("REFERRAL_DATABASE_URL not set, using the in-memory store")
        return InMemoryStore()

    from db.repositories import PostgresStore

    return PostgresStore(settings.database_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings)

    app.state.settings = settings
    app.state.store = open_store(settings)
    app.state.notifications = NotificationCenter()
    try:
        yield
    finally:
        app.state.notifications.close()
        app.state.store.close()


app = FastAPI(title="Referral Earnings Engine", version="0.1.0", lifespan=lifespan)

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# dependencies
# ---------


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_notifications(request: Request) -> NotificationCenter:
    return request.app.state.notifications


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# ---------
# pydantic models (requests)
# ---------


class RegisterRequest(BaseModel):
    username: str
    email: str
    phone: str
    full_name: str
    password_hash: str = Field("", description="credential as issued by the auth service")
    referral_code: Optional[str] = None


class ValidateReferralRequest(BaseModel):
    referral_code: str


class PurchaseRequest(BaseModel):
    user_id: int = Field(..., description="authenticated purchaser")
    purchase_amount: Decimal = Field(..., ge=0)
    profit_amount: Decimal = Field(..., ge=0)
    product_name: Optional[str] = Field(None, min_length=1, max_length=100)
    category: Optional[str] = Field(None, min_length=1, max_length=50)


class MarkReadRequest(BaseModel):
    user_id: int
    notification_ids: Optional[List[int]] = None


# ---------
# serialization + errors
# ---------


def _serialize(value: Any) -> Any:
    """decimals must serialize as 2dp strings, datetimes as ISO 8601."""
    if isinstance(value, BaseModel):
        return _serialize(value.model_dump())
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if isinstance(exc, (AccountNotFound, TransactionNotFound)):
        status_code = 404
    elif isinstance(exc, StoreUnavailable):
        status_code = 503
    else:
        # business rule violations (duplicate identity, bad code, limit, ...)
        status_code = 400
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": exc.__class__.__name__},
    )


# ---------
# endpoints
# ---------


@app.post("/api/auth/register", status_code=201)
def auth_register(
    payload: RegisterRequest,
    store: Store = Depends(get_store),
    notifications: NotificationCenter = Depends(get_notifications),
    settings: Settings = Depends(get_app_settings),
):
    """
    create an account, optionally under a referral code.
    credential checks happen upstream; the credential is stored as given.
    """
    account = register_with_referral(
        store,
        payload.model_dump(exclude={"referral_code"}),
        payload.referral_code,
        events=notifications,
        settings=settings,
    )
    return _serialize(account)


@app.post("/api/auth/validate-referral")
def auth_validate_referral(
    payload: ValidateReferralRequest,
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    return _serialize(validate_referral_code(store, payload.referral_code, settings))


@app.post("/api/referral/purchase", status_code=201)
def referral_purchase(
    payload: PurchaseRequest,
    store: Store = Depends(get_store),
    notifications: NotificationCenter = Depends(get_notifications),
    settings: Settings = Depends(get_app_settings),
):
    """
    record a purchase and distribute its referral earnings.
    the body always carries the ledger record; check `status` for the outcome.
    """
    metadata = {}
    if payload.product_name is not None:
        metadata["product_name"] = payload.product_name
    if payload.category is not None:
        metadata["category"] = payload.category

    tx = process_purchase(
        store,
        payload.user_id,
        payload.purchase_amount,
        payload.profit_amount,
        metadata,
        events=notifications,
        settings=settings,
    )
    return _serialize(tx)


@app.get("/api/referral/transactions/{transaction_id}")
def referral_transaction(transaction_id: str, store: Store = Depends(get_store)):
    return _serialize(get_transaction(store, transaction_id))


@app.post("/api/referral/transactions/{transaction_id}/retry")
def referral_transaction_retry(
    transaction_id: str,
    store: Store = Depends(get_store),
    notifications: NotificationCenter = Depends(get_notifications),
):
    return _serialize(retry_distribution(store, transaction_id, events=notifications))


@app.get("/api/referral/tree")
def referral_tree(
    user_id: int = Query(..., description="Account whose downline we want"),
    depth: int = Query(2, ge=1, le=2),
    store: Store = Depends(get_store),
):
    tree = get_tree(store, user_id, depth)
    return {
        "user_id": user_id,
        "depth": depth,
        "self": _serialize(tree["self"].summary()),
        "direct_referrals": [_serialize(a.summary()) for a in tree["direct_referrals"]],
        "indirect_referrals": [_serialize(a.summary()) for a in tree["indirect_referrals"]],
    }


@app.get("/api/referral/stats")
def referral_stats_endpoint(
    user_id: int = Query(...),
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    return _serialize(referral_stats(store, user_id, settings))


@app.get("/api/referral/earnings")
def referral_earnings(
    user_id: int = Query(..., description="Account to report on"),
    from_datetime: Optional[datetime] = Query(
        None,
        alias="from",
        description="Start datetime (inclusive), ISO 8601. If omitted, beginning of time.",
    ),
    to_datetime: Optional[datetime] = Query(
        None,
        alias="to",
        description="End datetime (inclusive), ISO 8601. If omitted, end of time.",
    ),
    store: Store = Depends(get_store),
):
    return _serialize(user_earnings_report(store, user_id, from_datetime, to_datetime))


@app.get("/api/referral/analytics")
def referral_analytics(store: Store = Depends(get_store)):
    return _serialize(system_analytics(store))


@app.get("/api/referral/leaderboard")
def referral_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    store: Store = Depends(get_store),
):
    return {"leaderboard": _serialize(leaderboard(store, limit))}


@app.get("/api/notifications")
def notifications_list(
    user_id: int = Query(...),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    kind: Optional[Literal["earning", "referral", "purchase", "system"]] = Query(None),
    notifications: NotificationCenter = Depends(get_notifications),
):
    return _serialize(notifications.list_for(user_id, page, limit, kind))


@app.get("/api/notifications/unread-count")
def notifications_unread_count(
    user_id: int = Query(...),
    notifications: NotificationCenter = Depends(get_notifications),
):
    return {"user_id": user_id, "unread": notifications.unread_count(user_id)}


@app.put("/api/notifications/mark-read")
def notifications_mark_read(
    payload: MarkReadRequest,
    notifications: NotificationCenter = Depends(get_notifications),
):
    changed = notifications.mark_read(payload.user_id, payload.notification_ids)
    return {"user_id": payload.user_id, "marked": changed}
