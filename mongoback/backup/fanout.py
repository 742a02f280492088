"""
Per-database backups: discover the databases behind a URI and run the
single-database chain once for each of them, sequentially.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List

from .enumerator import list_database_names
from .errors import BackupError, ConfigError, PartialBackupFailure
from .orchestrator import BackupOrchestrator
from .types import AttemptContext, BackupStatus, Result

logger = logging.getLogger(__name__)


class FanOutController:
    """Runs one attempt per discovered database and aggregates the outcome."""

    def __init__(self, orchestrator: BackupOrchestrator,
                 list_databases: Callable[[str], List[str]] = list_database_names):
        self.orchestrator = orchestrator
        self.list_databases = list_databases

    def run(self, ctx: AttemptContext) -> Result:
        """
        Back up every non-excluded database of the plan.

        Args:
            ctx: Parent attempt context

        Returns:
            Successful Result with the summed size of all archives

        Raises:
            ConfigError: If the plan has no URI
            EnumerationFailed: If the database list cannot be obtained
            PartialBackupFailure: If at least one database failed; its result
                carries the summed size of the databases that succeeded
        """
        result = Result.pending(ctx)
        plan = ctx.plan

        if not plan.target.uri:
            raise ConfigError(f"Must use a MongoDB URI with '{plan.mode.value}' backup mode", result=result)

        try:
            db_names = self.list_databases(plan.target.uri)
        except BackupError as e:
            e.result = result
            raise

        excluded = set(plan.target.exclude_databases)
        attempts = 0
        total_size = 0
        failed: List[str] = []

        for db_name in db_names:
            if db_name in excluded:
                logger.info(f"[{plan.name}] Excluded backup of DB '{db_name}'")
                continue

            attempts += 1
            child = ctx.derive(db_name)
            try:
                child_result = self.orchestrator.run(child)
            except BackupError as e:
                logger.error(f"[{plan.name}] Backup of DB '{db_name}' failed: {e}")
                failed.append(db_name)
                continue
            except Exception as e:
                logger.exception(f"[{plan.name}] Backup of DB '{db_name}' failed unexpectedly: {e}")
                failed.append(db_name)
                continue
            total_size += child_result.size

        result.size = total_size
        result.duration = datetime.now(timezone.utc) - ctx.started_at

        if failed:
            raise PartialBackupFailure(failed, attempts, result=result)

        result.status = BackupStatus.SUCCESS
        logger.info(
            f"[{plan.name}] Backed up {attempts} databases "
            f"({total_size / 1024 / 1024:.2f} MB) in {result.duration}"
        )
        return result
