"""
크레딧 동시 차감 검증: 잔액 k*A인 사용자에게 N개 스레드가 동시에 A씩 차감한다.

기대 결과: 정확히 k번 성공, N-k번 InsufficientCredits, 최종 잔액 0.
(읽고-계산하고-쓰기 방식이면 성공 횟수가 k를 넘거나 잔액이 음수가 된다)

사용법:
    cd src && python -m scripts.credit_contention
    cd src && DATABASE_URL=postgresql://... python -m scripts.credit_contention --workers 32
"""

import argparse
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

from sqlmodel import Session

from core.exceptions import InsufficientCredits
from model.database import build_engine, create_db_and_tables
from service import credit_service
from utility.timer import timer


def _deduct_one(engine, user_id: str, amount: int) -> bool:
    with Session(engine) as session:
        try:
            credit_service.deduct_credits(user_id, amount, session, description="contention check")
            return True
        except InsufficientCredits:
            return False


def main():
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--workers", type=int, default=16)
    parser.add_argument("--calls", type=int, default=50)
    parser.add_argument("--amount", type=int, default=10)
    parser.add_argument("--succeed", type=int, default=20, help="k: 성공해야 하는 차감 횟수")
    args = parser.parse_args()

    url = os.environ.get("DATABASE_URL")
    if not url or url == "sqlite://":
        url = f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'contention.db')}"
    engine = build_engine(url)
    create_db_and_tables(engine)

    user_id = f"contention_{uuid4().hex[:8]}"
    with Session(engine) as session:
        credit_service.initialize_user_credits(user_id, session, args.succeed * args.amount)

    print(f"DB: {url}")
    print(f"{args.calls} calls x {args.amount} credits, {args.workers} workers, balance {args.succeed * args.amount}")
    print("-" * 60)

    with timer() as t:
        with ThreadPoolExecutor(max_workers=args.workers) as pool:
            results = list(pool.map(lambda _: _deduct_one(engine, user_id, args.amount), range(args.calls)))

    with Session(engine) as session:
        balance = credit_service.get_user_credits(user_id, session).credits_remaining
        usage = [tx for tx in credit_service.list_transactions(user_id, session, limit=args.calls + 1) if tx.amount < 0]

    succeeded = sum(results)
    print(f"  succeeded   {succeeded} (expected {min(args.succeed, args.calls)})")
    print(f"  rejected    {len(results) - succeeded}")
    print(f"  balance     {balance}")
    print(f"  usage rows  {len(usage)}")
    print(f"  elapsed     {t.elapsed:.3f}s")

    ok = succeeded == min(args.succeed, args.calls) and balance >= 0 and len(usage) == succeeded
    print("OK" if ok else "FAILED: lost update or double spend detected")
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
