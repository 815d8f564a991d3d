import logging

from genqueue.config import settings
from genqueue.db import init_db
from genqueue.worker import reap_stale_jobs


def main() -> None:
    logging.basicConfig(level=settings.log_level.upper())
    init_db()
    reaped = reap_stale_jobs()
    for job in reaped:
        print(f"{job.job_id} {job.type.value}: {job.error_message}")
    print(f"Stale jobs reaped: {len(reaped)}")


if __name__ == "__main__":
    main()
