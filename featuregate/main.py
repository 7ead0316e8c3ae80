"""FastAPI app exposing the feature entitlement engine."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .billing import process_subscription_event
from .catalog import build_snapshot, get_feature, load_hierarchy, record_usage_event
from .constants import CALL_FEATURE_KEYS, Reason
from .db import get_db, init_db
from .engine import AccessDecisionEngine
from .models import ApiToken, BillingEvent, User
from .periods import utc_now
from .plans import FREE_RANK
from .schemas import (
    AccessRequest,
    AccessVerdict,
    AuthResponse,
    CallAdmission,
    CallSessionRequest,
    ProfileOut,
    RegisterRequest,
    UsageRecorded,
)
from .security import generate_access_token, hash_token, verify_signature
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class RequestContext:
    user: User
    token: ApiToken


@asynccontextmanager
async def lifespan(_: FastAPI):
    logging.basicConfig(level=get_settings().log_level)
    init_db()
    yield


app = FastAPI(
    title="Feature Entitlement API",
    description="Server-authoritative access decisions, usage quotas and catalog snapshots for paid features.",
    version="0.1.0",
    lifespan=lifespan,
)


def get_clock() -> Callable[[], datetime]:
    return utc_now


def get_engine(settings: Settings = Depends(get_settings)) -> AccessDecisionEngine:
    return AccessDecisionEngine(max_attempts=settings.ledger_max_attempts)


def validate_email(email: str) -> None:
    if not EMAIL_REGEX.match(email):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Invalid email format.",
        )


def _find_token(db: Session, credentials: HTTPAuthorizationCredentials | None) -> ApiToken | None:
    if credentials is None or credentials.scheme.lower() != "bearer":
        return None
    return db.scalar(
        select(ApiToken).where(
            ApiToken.token_hash == hash_token(credentials.credentials),
            ApiToken.revoked_at.is_(None),
        )
    )


def get_request_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> RequestContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token.",
        )

    token = _find_token(db, credentials)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token.",
        )

    user = db.get(User, token.user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token user not found.",
        )
    return RequestContext(user=user, token=token)


DENIAL_STATUS = {
    Reason.NOT_AUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    Reason.VERIFICATION_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def decide_for_request(
    feature_key: str,
    credentials: HTTPAuthorizationCredentials | None,
    db: Session,
    engine: AccessDecisionEngine,
    now: datetime,
) -> AccessVerdict:
    try:
        token = _find_token(db, credentials)
    except SQLAlchemyError:
        logger.exception("Session lookup failed", extra={"feature_key": feature_key})
        return AccessVerdict.deny(Reason.VERIFICATION_FAILED)
    finally:
        # The engine opens its own session; release this one before deciding.
        db.close()

    user_id = token.user_id if token is not None else None
    return engine.decide(user_id, feature_key, now)


def require_feature_access(feature_key: str) -> Callable:
    """
    Factory that creates a dependency guarding a route behind one feature.

    The check is the same decision `POST /features/access` makes, so a grant
    consumes one free use where the feature is metered.

    Returns:
        FastAPI dependency that raises 401/403/503 on denial, else returns the verdict
    """

    def check_feature(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
        db: Session = Depends(get_db),
        engine: AccessDecisionEngine = Depends(get_engine),
        clock: Callable[[], datetime] = Depends(get_clock),
    ) -> AccessVerdict:
        verdict = decide_for_request(feature_key, credentials, db, engine, clock())
        if not verdict.granted:
            raise HTTPException(
                status_code=DENIAL_STATUS.get(verdict.reason, status.HTTP_403_FORBIDDEN),
                detail={"error": verdict.reason.value, "featureKey": feature_key},
            )
        return verdict

    return check_feature


CALL_ACCESS_CHECKS = {
    feature_key: require_feature_access(feature_key) for feature_key in set(CALL_FEATURE_KEYS.values())
}


def require_call_access(
    payload: CallSessionRequest,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    engine: AccessDecisionEngine = Depends(get_engine),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> CallAdmission:
    session_type = payload.session_type.strip().lower()
    feature_key = CALL_FEATURE_KEYS.get(session_type)
    if feature_key is None:
        return CallAdmission(session_type=session_type)

    verdict = CALL_ACCESS_CHECKS[feature_key](
        credentials=credentials,
        db=db,
        engine=engine,
        clock=clock,
    )
    return CallAdmission(session_type=session_type, feature_key=feature_key, remaining=verdict.remaining)


@app.get("/health")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> AuthResponse:
    validate_email(payload.email)
    email = payload.email.strip().lower()
    if db.scalar(select(User).where(User.email == email)):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered.",
        )

    user = User(email=email, full_name=payload.full_name.strip())
    access_token = generate_access_token()
    token = ApiToken(user=user, token_hash=hash_token(access_token))

    db.add_all([user, token])
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Unable to register user with provided data.",
        ) from None

    db.refresh(user)
    return AuthResponse(access_token=access_token, token_type="bearer", user=user)


@app.post("/auth/tokens/rotate")
def rotate_token(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict[str, str]:
    token = db.get(ApiToken, context.token.id)
    token.revoked_at = clock()
    new_token = generate_access_token()
    db.add(ApiToken(user_id=context.user.id, token_hash=hash_token(new_token)))
    db.commit()
    return {
        "access_token": new_token,
        "token_type": "bearer",
    }


@app.get("/users/me", response_model=ProfileOut)
def get_my_profile(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> ProfileOut:
    rank = load_hierarchy(db).rank_of(context.user.plan)
    return ProfileOut(
        id=context.user.id,
        email=context.user.email,
        plan=context.user.plan,
        plan_rank=FREE_RANK if rank is None else rank,
        plan_expiry=context.user.plan_expiry,
    )


@app.post("/features/access", response_model=AccessVerdict, response_model_exclude_none=True)
def check_feature_access(
    payload: AccessRequest,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    engine: AccessDecisionEngine = Depends(get_engine),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AccessVerdict:
    return decide_for_request(payload.feature_key, credentials, db, engine, clock())


@app.post("/calls/sessions", response_model=CallAdmission, response_model_exclude_none=True)
def start_call_session(
    context: RequestContext = Depends(get_request_context),
    admission: CallAdmission = Depends(require_call_access),
) -> CallAdmission:
    logger.info(
        "Call session admitted",
        extra={"user_id": context.user.id, "session_type": admission.session_type},
    )
    return admission


@app.get("/features/catalog")
def get_feature_catalog(
    if_none_match: str | None = Header(default=None, alias="If-None-Match"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Response:
    snapshot = build_snapshot(db, settings.catalog_max_age)
    headers = {
        "ETag": f'"{snapshot.version}"',
        "Cache-Control": f"max-age={snapshot.max_age}",
    }
    if if_none_match and if_none_match.removeprefix("W/").strip('"') == snapshot.version:
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
    return JSONResponse(content=snapshot.model_dump(mode="json", by_alias=True), headers=headers)


@app.post("/features/{feature_key}/usage", response_model=UsageRecorded)
def record_feature_usage(
    feature_key: str,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> UsageRecorded:
    if not idempotency_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Idempotency-Key header.",
        )

    feature = get_feature(db, feature_key)
    if feature is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Unknown feature.",
        )

    recorded = record_usage_event(db, feature, context.user.id, idempotency_key, clock())
    return UsageRecorded(feature_key=feature.key, recorded=recorded)


@app.post("/billing/webhooks/subscription")
async def process_subscription_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    event_id: str | None = Header(default=None, alias="X-Event-Id"),
    signature: str | None = Header(default=None, alias="X-Signature"),
) -> dict:
    raw_payload = await request.body()
    if not verify_signature(raw_payload, signature, settings.webhook_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature.",
        )

    try:
        payload = json.loads(raw_payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload.",
        ) from None
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Event payload must be an object.",
        )

    idempotency_key = event_id or payload.get("id")
    if not idempotency_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing event id for idempotency.",
        )

    existing_event = db.scalar(
        select(BillingEvent).where(BillingEvent.idempotency_key == idempotency_key)
    )
    if existing_event:
        return {
            "status": "duplicate",
            "idempotency_key": idempotency_key,
            "event_type": existing_event.event_type,
        }

    updated_plan, user_id = process_subscription_event(db, payload, load_hierarchy(db))

    db.add(
        BillingEvent(
            user_id=user_id,
            event_type=str(payload.get("type", "unknown")),
            idempotency_key=idempotency_key,
            payload=payload,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return {
            "status": "duplicate",
            "idempotency_key": idempotency_key,
        }

    return {
        "status": "processed",
        "idempotency_key": idempotency_key,
        "updated_plan": updated_plan,
    }
