from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from core.config import settings
from core.dependencies import get_current_user_id
from core.exceptions import CreditsNotInitialized
from model.database import get_session
from service import credit_service

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("")
def get_credits(
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
):
    credits = credit_service.get_user_credits(user_id, session)
    if not credits:
        raise CreditsNotInitialized
    return {"success": True, "credits": credits.credits_remaining}


@router.post("/initialize")
def initialize_credits(
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
):
    """처음 로그인한 사용자에게 기본 크레딧을 지급한다. 여러 번 호출해도 한 번만 지급된다."""
    credits, created = credit_service.initialize_user_credits(
        user_id, session, settings.INITIAL_CREDITS
    )
    return {
        "success": True,
        "credits": credits.credits_remaining,
        "initialized": created,
    }


@router.get("/transactions")
def list_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
):
    transactions = credit_service.list_transactions(user_id, session, limit)
    return {"success": True, "transactions": transactions}
