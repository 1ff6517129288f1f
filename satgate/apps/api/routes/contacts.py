from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from satgate.apps.api.deps import Principal, enforce_sat, get_current_principal, get_db
from satgate.apps.api.openapi import PROTECTED_ERROR_RESPONSES
from satgate.apps.api.response import success_response
from satgate.domain.sat import FEATURE_CONTACTS_VIEW
from satgate.persistence.repos import relationships as relationships_repo


router = APIRouter(prefix="/contacts", tags=["contacts"], responses=PROTECTED_ERROR_RESPONSES)


@router.get("")
async def get_contact(
    request: Request,
    coach_slug: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    slug = (coach_slug or "").strip()
    if not slug:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "MISSING_COACH_SLUG", "message": "coach_slug is required"},
        )
    # The claim commits only once the coach resolves, so a bad slug leaves the token usable.
    await enforce_sat(request=request, principal=principal, db=db, feature=FEATURE_CONTACTS_VIEW, commit=False)
    coach = await relationships_repo.get_coach_by_slug(db, slug)
    if coach is None:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "COACH_NOT_FOUND", "message": "Coach not found"},
        )
    card = {
        "coach": {"slug": coach.slug, "name": coach.name},
        "email": coach.contact_email,
        "whatsapp": coach.whatsapp_link,
    }
    await db.commit()
    return success_response(request=request, data=card)
