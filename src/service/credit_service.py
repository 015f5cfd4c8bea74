"""크레딧 원장.

잔액 변경은 전부 조건부 UPDATE 한 번으로 처리하고,
같은 DB 트랜잭션 안에서 CreditTransaction을 하나 남긴다.
읽고-계산하고-쓰는 패턴은 동시 요청에서 이중 차감을 만들기 때문에 쓰지 않는다.

commit=False로 호출하면 커밋은 호출자 몫이다.
실행기가 단계 상태 변경과 차감/환불을 한 트랜잭션으로 묶을 때 사용한다.
"""

from dataclasses import dataclass

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from core.exceptions import CreditsNotInitialized, InsufficientCredits
from model.credit import (
    TX_INITIAL_GRANT,
    TX_REFUND,
    TX_USAGE,
    CreditTransaction,
    UserCredits,
)
from model.project import Project
from utility.timer import utcnow


@dataclass(frozen=True)
class CreditCheck:
    sufficient: bool
    current: int


def get_user_credits(user_id: str, session: Session) -> UserCredits | None:
    # 조건부 UPDATE는 identity map을 거치지 않으므로 항상 DB 값으로 갱신한다
    return session.get(UserCredits, user_id, populate_existing=True)


def check_credits(user_id: str, amount: int, session: Session) -> CreditCheck:
    """부작용 없는 잔액 확인. 없는 사용자는 잔액 0으로 본다."""
    credits = get_user_credits(user_id, session)
    current = credits.credits_remaining if credits else 0
    return CreditCheck(sufficient=current >= amount, current=current)


def deduct_credits(
    user_id: str,
    amount: int,
    session: Session,
    description: str = "",
    project_id: str | None = None,
    step: str | None = None,
    commit: bool = True,
) -> int:
    """amount만큼 차감하고 새 잔액을 반환한다.

    잔액이 부족하면 아무것도 바꾸지 않고 InsufficientCredits,
    잔액 행이 없으면 CreditsNotInitialized를 올린다.
    """
    if amount <= 0:
        raise ValueError("deduct amount must be positive")

    stmt = (
        update(UserCredits)
        .where(
            col(UserCredits.user_id) == user_id,
            col(UserCredits.credits_remaining) >= amount,
        )
        .values(
            credits_remaining=UserCredits.credits_remaining - amount,
            updated_at=utcnow(),
        )
    )
    result = session.connection().execute(stmt)

    if result.rowcount == 0:
        current = _read_balance(user_id, session)
        if commit:
            session.rollback()
        if current is None:
            raise CreditsNotInitialized
        logger.info(f"Insufficient credits: user={user_id} required={amount} current={current}")
        raise InsufficientCredits(details={"required": amount, "current": current})

    session.add(
        CreditTransaction(
            user_id=user_id,
            amount=-amount,
            type=TX_USAGE,
            description=description,
            project_id=project_id,
            step=step,
        )
    )
    balance = _read_balance(user_id, session)
    if commit:
        session.commit()
    logger.info(f"Credits deducted: user={user_id} amount={amount} balance={balance} project={project_id}")
    return balance


def add_credits(
    user_id: str,
    amount: int,
    session: Session,
    tx_type: str = TX_REFUND,
    description: str = "",
    project_id: str | None = None,
    step: str | None = None,
    commit: bool = True,
) -> int:
    """amount만큼 더하고 새 잔액을 반환한다 (환불, 구매)."""
    if amount <= 0:
        raise ValueError("credit amount must be positive")

    stmt = (
        update(UserCredits)
        .where(col(UserCredits.user_id) == user_id)
        .values(
            credits_remaining=UserCredits.credits_remaining + amount,
            updated_at=utcnow(),
        )
    )
    result = session.connection().execute(stmt)
    if result.rowcount == 0:
        if commit:
            session.rollback()
        raise CreditsNotInitialized

    session.add(
        CreditTransaction(
            user_id=user_id,
            amount=amount,
            type=tx_type,
            description=description,
            project_id=project_id,
            step=step,
        )
    )
    balance = _read_balance(user_id, session)
    if commit:
        session.commit()
    logger.info(f"Credits added ({tx_type}): user={user_id} amount={amount} balance={balance}")
    return balance


def refund_step(project: Project, step: str, session: Session, reason: str = "") -> int:
    """해당 단계에 잡혀 있는 크레딧을 그대로 돌려준다. 커밋하지 않는다.

    환불할 금액이 없으면 0. charged_steps 정리는 호출자가 상태 변경과 함께 한다.
    """
    amount = (project.charged_steps or {}).get(step, 0)
    if amount <= 0:
        return 0
    add_credits(
        project.user_id,
        amount,
        session,
        tx_type=TX_REFUND,
        description=f"Refund: {project.workflow_type} {step} failed" + (f" ({reason[:120]})" if reason else ""),
        project_id=project.id,
        step=step,
        commit=False,
    )
    return amount


def initialize_user_credits(
    user_id: str, session: Session, initial: int
) -> tuple[UserCredits, bool]:
    """잔액 행이 없을 때만 만든다. (행, 새로 만들었는지)를 반환한다.

    동시에 두 번 호출돼도 기본키 충돌로 한쪽만 성공하고,
    initial_grant 거래도 실제로 행을 만든 쪽만 남긴다.
    """
    existing = get_user_credits(user_id, session)
    if existing:
        return existing, False

    credits = UserCredits(user_id=user_id, credits_remaining=initial)
    session.add(credits)
    if initial > 0:
        session.add(
            CreditTransaction(
                user_id=user_id,
                amount=initial,
                type=TX_INITIAL_GRANT,
                description="Initial credits",
            )
        )
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return get_user_credits(user_id, session), False

    session.refresh(credits)
    logger.info(f"Credits initialized: user={user_id} amount={initial}")
    return credits, True


def list_transactions(user_id: str, session: Session, limit: int = 50) -> list[CreditTransaction]:
    """최신 거래부터."""
    return list(
        session.exec(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(col(CreditTransaction.created_at).desc(), col(CreditTransaction.id).desc())
            .limit(limit)
        ).all()
    )


def _read_balance(user_id: str, session: Session) -> int | None:
    stmt = select(UserCredits.credits_remaining).where(UserCredits.user_id == user_id)
    return session.connection().execute(stmt).scalar_one_or_none()
