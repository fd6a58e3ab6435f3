import asyncio
import logging
import tomllib
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketDisconnect

from aggregation import DayGroup, LedgerView, MonthlyAggregator, build_view
from config import get_settings
from database import SessionLocal
from docstore import DocumentStore
from identity import AuthError, IdentityProvider, auth_error_message
from models import TransactionType
from periods import current_month, month_tabs, parse_month
from schemas import (
    Category,
    CategoryIn,
    CategoryUpdate,
    CredentialsIn,
    EmailVerificationIn,
    PasswordChangeIn,
    PasswordResetConfirmIn,
    PasswordResetIn,
    ProfileIn,
    RegisterIn,
    Transaction,
    TransactionIn,
)
from services import (
    CategoryService,
    ProfileService,
    TransactionService,
    group_label,
    list_users,
)
from sessions import SessionContext, SessionState

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SESSION_COOKIE = "kue_session"

AUTH_STATUS = {
    "user-not-found": 401,
    "wrong-password": 401,
    "requires-recent-login": 401,
    "email-not-verified": 403,
    "too-many-requests": 429,
    "email-already-in-use": 409,
    "credential-already-in-use": 409,
    "account-exists-with-different-credential": 409,
}


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()

app = FastAPI(title="Kue", version=APP_VERSION)

store = DocumentStore(SessionLocal)
identity_provider = IdentityProvider(SessionLocal)


def get_store() -> DocumentStore:
    return store


def get_identity() -> IdentityProvider:
    return identity_provider


def open_session(
    token: Optional[str], store: DocumentStore, identity: IdentityProvider
) -> SessionContext:
    ctx = SessionContext(store, identity)
    ctx.begin()
    ctx.on_auth_state_changed(identity.principal_from_session(token))
    return ctx


def get_session(
    request: Request,
    store: DocumentStore = Depends(get_store),
    identity: IdentityProvider = Depends(get_identity),
) -> SessionContext:
    return open_session(request.cookies.get(SESSION_COOKIE), store, identity)


def require_user(ctx: SessionContext = Depends(get_session)) -> SessionContext:
    if ctx.state != SessionState.ready or ctx.user is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return ctx


def require_admin(ctx: SessionContext = Depends(require_user)) -> SessionContext:
    if not ctx.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return ctx


def auth_failure(exc: AuthError, operation: str) -> HTTPException:
    logger.info(f"auth_error: operation={operation} code={exc.code}")
    return HTTPException(
        status_code=AUTH_STATUS.get(exc.code, 400),
        detail={"code": exc.code, "message": auth_error_message(exc.code, operation)},
    )


def set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_max_age_hours * 3600,
        httponly=True,
        samesite="lax",
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"storage_error: path={request.url.path}")
    return JSONResponse(
        status_code=503,
        content={"detail": "The change could not be saved. Try again."},
    )


def category_payload(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "group": category.group,
        "group_label": group_label(category),
        "type": category.type.value,
    }


def transaction_payload(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "amount": txn.amount,
        "category_id": txn.category_id,
        "category_name": txn.category_name,
        "category_type": txn.category_type,
        "date": txn.date.isoformat(),
        "note": txn.note,
    }


def day_payload(group: DayGroup) -> dict[str, object]:
    return {
        "date": group.key,
        "income": group.income,
        "expense": group.expense,
        "balance": group.balance,
        "items": [transaction_payload(txn) for txn in group.items],
    }


def ledger_payload(view: LedgerView) -> dict[str, object]:
    summary = view.summary
    return {
        "summary": {
            "month": summary.month,
            "income": summary.monthly_income,
            "expense": summary.monthly_expense,
            "balance": summary.all_time_balance,
        },
        "days": [day_payload(group) for group in view.days],
    }


def session_payload(ctx: SessionContext) -> dict[str, object]:
    principal = ctx.principal
    return {
        "user": ctx.user.model_dump() if ctx.user else None,
        "email_verified": principal.email_verified if principal else False,
        "providers": list(principal.provider_ids) if principal else [],
        "is_loading": ctx.is_loading,
    }


def month_from_request(month: Optional[str]) -> str:
    if not month:
        return current_month().key
    try:
        return parse_month(month).key
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/auth/register", status_code=201)
def register(
    payload: RegisterIn, identity: IdentityProvider = Depends(get_identity)
):
    try:
        principal = identity.create_user(payload.email, payload.password)
    except AuthError as exc:
        raise auth_failure(exc, "register") from exc
    return {
        "uid": principal.uid,
        "email": principal.email,
        "message": "Registration succeeded. Check your email to verify your account.",
    }


@app.post("/auth/verify-email")
def verify_email(
    payload: EmailVerificationIn, identity: IdentityProvider = Depends(get_identity)
):
    try:
        principal = identity.verify_email(payload.token)
    except AuthError as exc:
        raise auth_failure(exc, "verify") from exc
    return {"uid": principal.uid, "email_verified": principal.email_verified}


@app.post("/auth/login")
def login(
    payload: CredentialsIn,
    response: Response,
    store: DocumentStore = Depends(get_store),
    identity: IdentityProvider = Depends(get_identity),
):
    try:
        principal = identity.sign_in_with_password(payload.email, payload.password)
    except AuthError as exc:
        raise auth_failure(exc, "login") from exc

    ctx = SessionContext(store, identity)
    if ctx.on_auth_state_changed(principal) != SessionState.ready:
        raise auth_failure(AuthError("email-not-verified"), "login")
    set_session_cookie(response, identity.issue_session(principal))
    return session_payload(ctx)


@app.post("/auth/logout", status_code=204)
def logout(ctx: SessionContext = Depends(get_session)):
    ctx.sign_out()
    response = Response(status_code=204)
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.post("/auth/password-reset", status_code=202)
def request_password_reset(
    payload: PasswordResetIn, identity: IdentityProvider = Depends(get_identity)
):
    try:
        identity.send_password_reset(payload.email)
    except AuthError as exc:
        raise auth_failure(exc, "reset") from exc
    return {"message": "A password reset link has been sent to your email."}


@app.post("/auth/password-reset/confirm")
def confirm_password_reset(
    payload: PasswordResetConfirmIn,
    identity: IdentityProvider = Depends(get_identity),
):
    try:
        identity.confirm_password_reset(payload.token, payload.new_password)
    except AuthError as exc:
        raise auth_failure(exc, "reset") from exc
    return {"message": "Password updated."}


@app.post("/auth/password")
def change_password(
    payload: PasswordChangeIn, ctx: SessionContext = Depends(require_user)
):
    uid = ctx.user.id
    try:
        if payload.current_password:
            ctx.identity.reauthenticate(uid, payload.current_password)
        ctx.identity.update_password(uid, payload.new_password)
    except AuthError as exc:
        raise auth_failure(exc, "password") from exc
    return {"message": "Password changed."}


@app.delete("/auth/providers/{provider_id}")
def unlink_provider(provider_id: str, ctx: SessionContext = Depends(require_user)):
    try:
        principal = ctx.identity.unlink_provider(ctx.user.id, provider_id)
    except AuthError as exc:
        raise auth_failure(exc, "link") from exc
    return {"providers": list(principal.provider_ids)}


@app.get("/api/me")
def me(ctx: SessionContext = Depends(require_user)):
    return session_payload(ctx)


@app.put("/api/me")
def update_me(payload: ProfileIn, ctx: SessionContext = Depends(require_user)):
    try:
        ctx.identity.update_profile(ctx.user.id, payload.name)
    except AuthError as exc:
        raise auth_failure(exc, "profile") from exc
    ProfileService(ctx.store, ctx.user.id).rename(payload.name)
    ctx.refresh_user()
    return session_payload(ctx)


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/months")
def months():
    return [{"value": tab.key, "label": tab.label} for tab in month_tabs()]


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    ctx: SessionContext = Depends(require_user),
):
    categories = CategoryService(ctx.store, ctx.user.id).list_all(type)
    return [category_payload(c) for c in categories]


@app.get("/api/categories/grouped")
def grouped_categories(
    type: TransactionType = TransactionType.expense,
    ctx: SessionContext = Depends(require_user),
):
    groups = CategoryService(ctx.store, ctx.user.id).grouped(type)
    return [
        {"group": label, "categories": [category_payload(c) for c in items]}
        for label, items in groups.items()
    ]


@app.post("/api/categories", status_code=201)
def create_category(payload: CategoryIn, ctx: SessionContext = Depends(require_user)):
    category = CategoryService(ctx.store, ctx.user.id).create(payload)
    return category_payload(category)


@app.patch("/api/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryUpdate,
    ctx: SessionContext = Depends(require_user),
):
    try:
        category = CategoryService(ctx.store, ctx.user.id).update(category_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return category_payload(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: str, ctx: SessionContext = Depends(require_user)):
    CategoryService(ctx.store, ctx.user.id).delete(category_id)
    return Response(status_code=204)


@app.get("/api/transactions")
def list_transactions(
    month: Optional[str] = None, ctx: SessionContext = Depends(require_user)
):
    transactions = TransactionService(ctx.store, ctx.user.id).list_all()
    if month:
        window = parse_month(month_from_request(month))
        transactions = [t for t in transactions if window.contains(t.date.date())]
    return [transaction_payload(t) for t in transactions]


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn, ctx: SessionContext = Depends(require_user)
):
    try:
        txn = TransactionService(ctx.store, ctx.user.id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return transaction_payload(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    payload: TransactionIn,
    ctx: SessionContext = Depends(require_user),
):
    service = TransactionService(ctx.store, ctx.user.id)
    try:
        service.get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        txn = service.update(transaction_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return transaction_payload(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: str, ctx: SessionContext = Depends(require_user)
):
    TransactionService(ctx.store, ctx.user.id).delete(transaction_id)
    return Response(status_code=204)


@app.get("/api/ledger")
def ledger(month: Optional[str] = None, ctx: SessionContext = Depends(require_user)):
    window = parse_month(month_from_request(month))
    transactions = TransactionService(ctx.store, ctx.user.id).list_all()
    return ledger_payload(build_view(transactions, window))


@app.get("/admin/overview")
def admin_overview(ctx: SessionContext = Depends(require_admin)):
    users = list_users(ctx.store)
    return {
        "users": len(users),
        "admins": sum(1 for u in users if u.role == "admin"),
    }


@app.websocket("/ws/ledger")
async def ledger_stream(
    websocket: WebSocket,
    month: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    identity: IdentityProvider = Depends(get_identity),
):
    ctx = open_session(websocket.cookies.get(SESSION_COOKIE), store, identity)
    if ctx.user is None:
        await websocket.close(code=4401)
        return
    try:
        selected = parse_month(month).key if month else current_month().key
    except ValueError:
        await websocket.close(code=4400)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def publish(message: Optional[dict]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, message)

    aggregator = MonthlyAggregator(
        TransactionService(store, ctx.user.id).subscribe,
        selected,
        on_change=lambda view: publish({"type": "ledger", **ledger_payload(view)}),
        on_error=lambda exc: publish({"type": "error", "detail": str(exc)}),
    )

    async def receive_months() -> None:
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except (ValueError, KeyError):
                    # non-JSON text or a binary frame
                    publish({"type": "invalid", "detail": "Expected a JSON object"})
                    continue
                key = message.get("month") if isinstance(message, dict) else None
                try:
                    await run_in_threadpool(aggregator.select_month, str(key or ""))
                except ValueError as exc:
                    publish({"type": "invalid", "detail": str(exc)})
        except WebSocketDisconnect:
            publish(None)

    await run_in_threadpool(aggregator.start)
    receiver = asyncio.create_task(receive_months())
    logger.info(f"ledger_stream_open: user={ctx.user.id} month={selected}")
    try:
        while True:
            message = await queue.get()
            if message is None:
                break
            await websocket.send_json(message)
            if message["type"] == "error":
                await websocket.close(code=1011)
                break
    except WebSocketDisconnect:
        logger.info(f"ledger_stream_disconnected: user={ctx.user.id}")
    finally:
        receiver.cancel()
        aggregator.stop()
        logger.info(f"ledger_stream_closed: user={ctx.user.id}")
