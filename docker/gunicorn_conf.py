# Gunicorn configuration for pgkeeper
# Only one worker owns the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = f"0.0.0.0:{os.environ.get('PORT', '5000')}"
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
# Backups and restores run in-process; keep request timeouts out of their way
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 120))


def post_worker_init(worker):
    """
    Designate the first worker (worker.age == 0) as the scheduler owner.

    create_app() reads SCHEDULER_WORKER, so scheduled backups and retention
    fire from exactly one worker per host. The fleet-wide backup lock covers
    the other hosts.
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): backup scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): scheduler disabled")
