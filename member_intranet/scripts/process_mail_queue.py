#!/usr/bin/env python3
"""Run one pass over due mass-mail jobs. Meant for cron when the in-process scheduler is off.

    */5 * * * * python -m member_intranet.scripts.process_mail_queue
"""

from __future__ import annotations

import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from member_intranet import config
from member_intranet.db.session import SessionLocalContent
from member_intranet.exceptions import NotFoundError
from member_intranet.logging_setup import setup_logging
from member_intranet.services import mass_mail_service
from member_intranet.services.mail_service import get_email_gateway

logger = logging.getLogger("member_intranet.scripts.process_mail_queue")


def main() -> int:
    parser = argparse.ArgumentParser(description="Process due mass-mail batches")
    parser.add_argument("--max-jobs", type=int, default=1, help="Jobs to advance in this run.")
    parser.add_argument("--job-id", type=int, default=None, help="Advance this job now, ignoring its pause.")
    args = parser.parse_args()

    setup_logging(config.LOG_LEVEL)
    db = SessionLocalContent()
    try:
        if args.job_id:
            results = [mass_mail_service.process_job_batch(db, get_email_gateway(), args.job_id)]
        else:
            results = mass_mail_service.process_due_jobs(db, get_email_gateway(), limit=max(1, args.max_jobs))
    except NotFoundError as exc:
        print(exc.message)
        return 2
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Mail queue run failed", extra={"event": "mail_queue_cli_failed"})
        return 1
    finally:
        db.close()

    if not results:
        print("No due mail jobs.")
    for result in results:
        print(
            f"job={result['jobID']} status={result['status']} sent={result['sent']} "
            f"failed={result['failed']} pending={result['pending']}"
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
