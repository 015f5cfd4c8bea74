from datetime import UTC, datetime

from sqlmodel import Field, SQLModel

# CreditTransaction.type
TX_USAGE = "usage"
TX_REFUND = "refund"
TX_PURCHASE = "purchase"
TX_INITIAL_GRANT = "initial_grant"


class UserCredits(SQLModel, table=True):
    """사용자별 크레딧 잔액. 거래 로그 합계의 캐시 역할."""

    __tablename__ = "user_credits"

    user_id: str = Field(primary_key=True, max_length=64)
    credits_remaining: int = Field(default=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CreditTransaction(SQLModel, table=True):
    """추가 전용 크레딧 거래 로그. 수정/삭제하지 않는다.

    amount는 부호 있는 정수: 음수 = 사용, 양수 = 환불/구매/초기 지급
    """

    __tablename__ = "credit_transactions"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=64)
    amount: int
    type: str  # usage, refund, purchase, initial_grant
    description: str = ""
    project_id: str | None = Field(default=None, index=True)
    step: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
