# Gunicorn configuration for RecordVault
# Only one worker may own the backup scheduler; the engine's single
# in-flight slot is per process.

import os
import logging

logger = logging.getLogger('gunicorn.error')

wsgi_app = 'recordvault:create_app()'


def post_worker_init(worker):
    """
    Called after a worker is initialized.

    Designates the first worker (worker.age == 0) as the scheduler owner.
    Only this worker runs APScheduler, so scheduled backups fire once.

    Args:
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
