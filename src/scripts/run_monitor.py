"""
모니터 sweep을 HTTP 없이 한 번 실행한다. (cron에서 직접 호출하거나 로컬 디버깅용)

사용법:
    cd src && python -m scripts.run_monitor
    cd src && python -m scripts.run_monitor --workflow character_ads
"""

import argparse
import json

from sqlmodel import Session

from client.registry import build_task_clients
from core.config import settings
from model.database import create_db_and_tables, engine
from utility.logger import setup_logger
from workflow.monitor import Monitor


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--workflow", default=None, help="특정 workflow_type만 처리")
    args = parser.parse_args()

    setup_logger()
    create_db_and_tables()
    clients = build_task_clients(settings)
    try:
        with Session(engine) as session:
            report = Monitor(session, clients).sweep(workflow_type=args.workflow)
    finally:
        clients.close()

    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
