from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.apps.api.deps import Principal, get_current_principal, get_db
from satgate.apps.api.openapi import ISSUANCE_ERROR_RESPONSES
from satgate.apps.api.rate_limit import LIMIT_SAT, enforce_rate_limit
from satgate.apps.api.response import SuccessEnvelope, success_response
from satgate.core.config import get_settings
from satgate.domain.sat import KNOWN_FEATURES, PREMIUM_FEATURES
from satgate.services.audit import record_event
from satgate.services.entitlements import FEATURE_MESSAGES_UNLIMITED, has_feature
from satgate.services.sat.issuer import get_issuer, normalize_method, normalize_path


router = APIRouter(prefix="/sat", tags=["sat"], responses=ISSUANCE_ERROR_RESPONSES)


class IssueTokenRequest(BaseModel):
    feature: str | None = None
    method: str | None = None
    path: str | None = None


class IssueTokenResponse(BaseModel):
    token: str
    token_id: str
    expires_at: datetime


def _bad_request(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"code": code, "message": message})


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[IssueTokenResponse],
)
async def issue_token(
    payload: IssueTokenRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    feature = (payload.feature or "").strip()
    # Budget is per subject and feature so one noisy feature cannot starve the others.
    # Unrecognised names share one bucket so clients cannot mint arbitrary keys.
    bucket = feature if feature in KNOWN_FEATURES else "unknown"
    await enforce_rate_limit(
        request=request,
        response=response,
        name=LIMIT_SAT,
        key=f"{principal.subject_id}:{bucket}",
        subject_id=principal.subject_id,
        subject_role=principal.role,
    )

    if not feature:
        raise _bad_request("SAT_MISSING_FEATURE", "feature is required")
    method = normalize_method(payload.method)
    if method is None:
        raise _bad_request("SAT_INVALID_METHOD", "method must be one of GET, POST, PUT, PATCH, DELETE")
    path = normalize_path(payload.path)
    if path is None:
        raise _bad_request("SAT_INVALID_PATH", "path must be an absolute request path")
    if feature not in KNOWN_FEATURES:
        raise _bad_request("SAT_UNKNOWN_FEATURE", f"Unknown feature: {feature}")

    issuer = get_issuer()
    if get_settings().sat_enforce_entitlements and feature in PREMIUM_FEATURES:
        entitled = await has_feature(db, principal.subject_id, FEATURE_MESSAGES_UNLIMITED, now=issuer.now())
        if not entitled:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "SAT_NOT_ENTITLED",
                    "message": "Feature requires an upgrade",
                    "feature": feature,
                },
            )

    issued = await issuer.issue(
        session=db,
        subject_id=principal.subject_id,
        feature=feature,
        method=method,
        path=path,
        session_id=principal.session_id,
    )
    await record_event(
        session=db,
        request=request,
        actor_type="user",
        actor_id=principal.subject_id,
        actor_role=principal.role,
        event_type="sat.issued",
        outcome="success",
        resource_type="sat",
        resource_id=issued.token_id,
        metadata={"feature": feature, "method": method, "path": path},
        commit=True,
        best_effort=True,
    )
    data = IssueTokenResponse(token=issued.token, token_id=issued.token_id, expires_at=issued.expires_at)
    return success_response(request=request, data=data.model_dump(mode="json"))
