# Gunicorn configuration for Mongoback
# Exactly one worker runs the backup scheduler; the others only serve the API

import os
import logging

bind = os.environ.get('BIND', '0.0.0.0:8090')
workers = int(os.environ.get('WORKERS', 2))
timeout = 120

logger = logging.getLogger('gunicorn.error')


def pre_fork(server, worker):
    """
    Decide which worker owns the scheduler before it imports the app.

    Runs in the arbiter. A worker becomes the owner when no live worker holds
    the role, so a replacement for a dead owner takes it over.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker about to be forked
    """
    worker.scheduler_owner = not any(
        getattr(w, 'scheduler_owner', False) for w in server.WORKERS.values()
    )


def post_fork(server, worker):
    """Export the scheduler role into the worker's environment."""
    if worker.scheduler_owner:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
