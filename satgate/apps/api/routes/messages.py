from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.apps.api.deps import Principal, enforce_sat, get_current_principal, get_db
from satgate.apps.api.openapi import PROTECTED_ERROR_RESPONSES
from satgate.apps.api.rate_limit import LIMIT_MESSAGES, enforce_rate_limit
from satgate.apps.api.response import success_response
from satgate.domain.models import Coach, Message
from satgate.domain.sat import FEATURE_CHAT_SEND
from satgate.persistence.repos import messages as messages_repo
from satgate.persistence.repos import relationships as relationships_repo
from satgate.services.audit import record_event
from satgate.services.entitlements import get_entitlement_resolver
from satgate.services.quota import (
    QuotaSnapshot,
    build_quota_exception,
    get_quota_ledger,
    quota_headers,
    trial_expired_result,
    usage_payload,
)
from satgate.services.relationships import build_relationship_exception, get_relationship_guard
from satgate.services.sanitize import sanitize_for_free_plan


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"], responses=PROTECTED_ERROR_RESPONSES)


class SendMessageRequest(BaseModel):
    content: str | None = None
    coach_slug: str | None = None


class MessageOut(BaseModel):
    id: int
    user_id: str
    coach_id: str | None
    content: str
    created_at: datetime


def _message_out(message: Message) -> dict:
    return MessageOut(
        id=message.id,
        user_id=message.user_id,
        coach_id=message.coach_id,
        content=message.content,
        created_at=message.created_at,
    ).model_dump(mode="json")


async def _refuse(
    *,
    request: Request,
    db: AsyncSession,
    principal: Principal,
    exc: HTTPException,
    event_type: str,
    coach_id: str | None,
) -> HTTPException:
    # Undo the uncommitted claim and any relationship write before reporting.
    await db.rollback()
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    await record_event(
        session=db,
        request=request,
        actor_type="user",
        actor_id=principal.subject_id,
        actor_role=principal.role,
        event_type=event_type,
        outcome="failure",
        resource_type="coach",
        resource_id=coach_id,
        metadata={k: v for k, v in detail.items() if k in {"scope", "limit", "used", "remaining"}},
        error_code=detail.get("code"),
        commit=True,
        best_effort=True,
    )
    return exc


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: SendMessageRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await enforce_rate_limit(
        request=request,
        response=response,
        name=LIMIT_MESSAGES,
        key=principal.subject_id,
        subject_id=principal.subject_id,
        subject_role=principal.role,
    )
    # The claim stays uncommitted until the message is written.
    await enforce_sat(request=request, principal=principal, db=db, feature=FEATURE_CHAT_SEND, commit=False)

    content = (payload.content or "").strip()
    if not content:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "MISSING_CONTENT", "message": "content is required"},
        )

    resolver = get_entitlement_resolver()
    ledger = get_quota_ledger()
    now = ledger.now()
    if not await resolver.has_messages_access(db, principal.subject_id, now=now):
        raise await _refuse(
            request=request,
            db=db,
            principal=principal,
            exc=build_quota_exception(trial_expired_result()),
            event_type="quota.blocked",
            coach_id=None,
        )

    coach: Coach | None = None
    if payload.coach_slug:
        coach = await relationships_repo.get_coach_by_slug(db, payload.coach_slug)
        if coach is None:
            await db.rollback()
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "COACH_NOT_FOUND", "message": "Coach not found"},
            )
        if principal.role == "athlete" and not coach.verified:
            await db.rollback()
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "COACH_NOT_VERIFIED", "message": "Coach is not verified yet"},
            )
        if principal.role == "athlete":
            admission = await get_relationship_guard().admit_and_touch(
                db, coach=coach, athlete_id=principal.subject_id
            )
            if not admission.allowed:
                raise await _refuse(
                    request=request,
                    db=db,
                    principal=principal,
                    exc=build_relationship_exception(admission),
                    event_type="relationship.limit_blocked",
                    coach_id=coach.id,
                )

    coach_id = coach.id if coach else None
    quota = await ledger.check(db, subject_id=principal.subject_id, resource_id=coach_id)
    if not quota.allowed:
        raise await _refuse(
            request=request,
            db=db,
            principal=principal,
            exc=build_quota_exception(quota),
            event_type="quota.blocked",
            coach_id=coach_id,
        )

    unlimited = quota.snapshot.unlimited
    final_content = content if unlimited else sanitize_for_free_plan(content)
    message = await messages_repo.add_message(
        db,
        user_id=principal.subject_id,
        coach_id=coach_id,
        content=final_content,
        created_at=now,
    )
    await db.commit()

    if unlimited:
        after = quota.snapshot
    else:
        used = (quota.snapshot.used or 0) + 1
        limit = quota.snapshot.limit or 0
        after = QuotaSnapshot(limit=limit, used=used, remaining=max(limit - used, 0))
    for header, value in quota_headers(after).items():
        response.headers[header] = value
    logger.info("message_sent subject=%s coach=%s message_id=%s", principal.subject_id, coach_id, message.id)
    return success_response(request=request, data={"message": _message_out(message), **usage_payload(after)})


@router.get("")
async def list_messages(
    request: Request,
    coach_slug: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    coach: Coach | None = None
    if coach_slug:
        coach = await relationships_repo.get_coach_by_slug(db, coach_slug)
        if coach is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "COACH_NOT_FOUND", "message": "Coach not found"},
            )
    coach_id = coach.id if coach else None
    items = await messages_repo.list_messages(db, user_id=principal.subject_id, coach_id=coach_id)
    snapshot = await get_quota_ledger().snapshot(db, subject_id=principal.subject_id, resource_id=coach_id)
    return success_response(
        request=request,
        data={"messages": [_message_out(item) for item in items], **usage_payload(snapshot)},
    )
