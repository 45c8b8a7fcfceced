"""
HTTP surface for entitlement resolution.

Routes:
- POST /entitlement/sign-in                    register or refresh the account from an identity token
- GET  /entitlement/{account_id}               access verdict
- GET  /entitlement/{account_id}/subscription  bound subscription status
- POST /entitlement/{account_id}/trial         start the one-time trial
- POST /entitlement/events                     provider lifecycle webhook
- GET  /health                                 liveness

Webhook status codes map onto the provider's redelivery semantics: 200 for
processed events (including duplicates), 400/422 for events that must not be
redelivered, 503 when the store stayed unavailable and redelivery is wanted.

Error bodies always use {"error": {"code", "message", "details"}}. Stack
traces are never returned to clients.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from . import config
from .clock import Clock, SystemClock
from .errors import EntitlementError, InvalidIdentityTokenError, MalformedEventError
from .identity import IdentityVerifier, build_verifier_from_env
from .locking import AccountLockRegistry
from .reconciler import EventReconciler
from .schemas import (
    AccessVerdictResponse,
    AccountResponse,
    EventAppliedResponse,
    SubscriptionResponse,
    TrialResponse,
    TrialStartResponse,
)
from .service import AccessQueryService
from .store import RecordStore, build_store_from_env

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature-Sha256"
CORRELATION_HEADER = "X-Correlation-ID"

router = APIRouter(prefix="/entitlement", tags=["entitlement"])


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify an HMAC-SHA256 signature of the raw body.

    Accepts hex or base64 encoded digests.
    """
    if not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    if hmac.compare_digest(digest.hex(), signature.strip().lower()):
        return True
    try:
        decoded = base64.b64decode(signature.strip(), validate=True)
    except (binascii.Error, ValueError):
        return False
    return hmac.compare_digest(digest, decoded)


def get_query_service(request: Request) -> AccessQueryService:
    service = getattr(request.app.state, "query_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Entitlements not configured")
    return service


def get_reconciler(request: Request) -> EventReconciler:
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Entitlements not configured")
    return reconciler


def get_identity_verifier(request: Request) -> IdentityVerifier:
    verifier = getattr(request.app.state, "identity_verifier", None)
    if verifier is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sign-in not configured")
    return verifier


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidIdentityTokenError("Missing bearer token")
    return token.strip()


@router.post("/events", response_model=EventAppliedResponse)
async def ingest_subscription_event(
    request: Request,
    x_signature_sha256: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
) -> dict:
    """Apply a provider lifecycle event. Duplicates return applied=false with 200."""
    body = await request.body()

    secret = request.app.state.webhook_secret
    if secret and not verify_webhook_signature(body, x_signature_sha256, secret):
        logger.warning("Invalid webhook signature", extra={"path": request.url.path})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedEventError("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise MalformedEventError("Event payload must be a JSON object")

    reconciler = get_reconciler(request)
    outcome = await run_in_threadpool(reconciler.apply_payload, payload)
    return outcome.to_dict()


@router.post("/sign-in", response_model=AccountResponse)
def sign_in(request: Request, authorization: Optional[str] = Header(None)) -> AccountResponse:
    """Verify the identity token, then create the record or refresh its profile and sign-in time."""
    profile = get_identity_verifier(request).verify(_bearer_token(authorization))
    record = get_query_service(request).register_account(profile)
    return AccountResponse.from_record(record)


@router.get("/{account_id}", response_model=AccessVerdictResponse)
def get_access(account_id: str, request: Request) -> dict:
    """Access verdict for the account. May persist a trial expiry before returning."""
    verdict = get_query_service(request).query_access(account_id)
    return verdict.to_dict()


@router.get("/{account_id}/subscription", response_model=SubscriptionResponse)
def get_subscription(account_id: str, request: Request) -> SubscriptionResponse:
    subscription = get_query_service(request).get_subscription(account_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/{account_id}/trial", response_model=TrialStartResponse)
def post_trial_start(account_id: str, request: Request) -> TrialStartResponse:
    trial = get_query_service(request).request_trial_start(account_id)
    return TrialStartResponse(trial=TrialResponse.from_trial(trial))


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Echo or generate a correlation id and turn unhandled exceptions into a
    generic 500 body.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "code": "internal_error",
                        "message": "An unexpected error occurred",
                        "details": {"correlation_id": correlation_id},
                    }
                },
                headers={CORRELATION_HEADER: correlation_id},
            )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    logger.warning(
        "Entitlement request rejected",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", None),
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": "http_error", "message": str(exc.detail), "details": {}}},
        headers=getattr(exc, "headers", None),
    )


def create_app(
    *,
    store: Optional[RecordStore] = None,
    clock: Optional[Clock] = None,
    query_service: Optional[AccessQueryService] = None,
    reconciler: Optional[EventReconciler] = None,
    webhook_secret: Optional[str] = config.WEBHOOK_SIGNING_SECRET,
    identity_verifier: Optional[IdentityVerifier] = None,
) -> FastAPI:
    """
    Build the FastAPI app. Service and reconciler share one store, clock and
    lock registry so reads and event writes serialize per account.
    """
    store = store or build_store_from_env()
    clock = clock or SystemClock()
    locks = AccountLockRegistry()

    app = FastAPI(title="Subscription Access")
    app.state.query_service = query_service or AccessQueryService(store, clock=clock, locks=locks)
    app.state.reconciler = reconciler or EventReconciler(store, clock=clock, locks=locks)
    app.state.webhook_secret = webhook_secret
    app.state.identity_verifier = identity_verifier or build_verifier_from_env()

    app.add_middleware(CorrelationIdMiddleware)
    app.add_exception_handler(EntitlementError, entitlement_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.include_router(router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app
