"""
Backup executor - entry point for running a plan.

run_backup() validates the plan's mode and dispatches either to the
single-database chain or to the per-database fan-out. BackupExecutor wraps
it for the scheduler and the HTTP layer:
1. Create BackupHistory record (status: running)
2. Run the plan, capturing the attempt's log lines
3. Update BackupHistory (status: success/failed, size, duration, error)
"""

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from flask import current_app

from mongoback import db
from mongoback.models import BackupHistory, BackupPlan
from .enumerator import list_database_names
from .errors import BackupError, ConfigError
from .fanout import FanOutController
from .orchestrator import BackupOrchestrator
from .types import AttemptContext, BackupMode, Plan, Result, RuntimeConfig

logger = logging.getLogger(__name__)


def run_backup(plan: Plan, runtime: RuntimeConfig,
               orchestrator: Optional[BackupOrchestrator] = None,
               list_databases: Optional[Callable[[str], List[str]]] = None,
               started_at: Optional[datetime] = None) -> Result:
    """
    Run a plan once.

    Args:
        plan: Backup plan
        runtime: Runtime paths and flags
        orchestrator: Single-database chain (default: BackupOrchestrator())
        list_databases: Database enumerator for the per-database mode
        started_at: Attempt start time (default: now)

    Returns:
        Successful Result

    Raises:
        ConfigError: If the plan combines options its mode does not support;
            raised before any side effect
        BackupError: If the attempt fails; .result holds the partial Result
    """
    ctx = AttemptContext.create(plan, runtime, started_at)
    orchestrator = orchestrator or BackupOrchestrator()

    if plan.mode == BackupMode.DATABASE:
        if not plan.target.uri:
            raise ConfigError(
                f"Must use a MongoDB URI with '{plan.mode.value}' backup mode",
                result=Result.pending(ctx),
            )
        controller = FanOutController(orchestrator, list_databases or list_database_names)
        return controller.run(ctx)

    if plan.target.exclude_databases:
        raise ConfigError(
            f"Cannot exclude databases with '{BackupMode.SINGLE.value}' (default) backup mode",
            result=Result.pending(ctx),
        )
    return orchestrator.run(ctx)


class _AttemptLogHandler(logging.Handler):
    """Collects log records emitted on the executing thread."""

    def __init__(self):
        super().__init__()
        self.thread_id = threading.get_ident()
        self.lines: List[str] = []
        self.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s %(message)s', '%Y-%m-%d %H:%M:%S'
        ))

    def emit(self, record: logging.LogRecord):
        if record.thread == self.thread_id:
            self.lines.append(self.format(record))


class BackupExecutor:
    """
    Runs a stored plan and records the attempt in the state database.
    """

    def __init__(self, plan_record: BackupPlan, runtime: RuntimeConfig,
                 orchestrator: Optional[BackupOrchestrator] = None,
                 list_databases: Optional[Callable[[str], List[str]]] = None):
        """
        Initialize backup executor.

        Args:
            plan_record: BackupPlan instance to execute
            runtime: Runtime paths and flags
            orchestrator: Optional chain override (tests)
            list_databases: Optional enumerator override (tests)
        """
        self.plan_record = plan_record
        self.runtime = runtime
        self.orchestrator = orchestrator
        self.list_databases = list_databases
        self.history_record = None
        self.result: Optional[Result] = None
        self.error: Optional[Exception] = None

    def execute(self) -> BackupHistory:
        """
        Execute the plan.

        Returns:
            BackupHistory record with execution results
        """
        self.history_record = BackupHistory(
            plan_id=self.plan_record.id,
            status='running',
            started_at=datetime.utcnow()
        )
        db.session.add(self.history_record)
        db.session.commit()

        handler = _AttemptLogHandler()
        backup_logger = logging.getLogger('mongoback.backup')
        backup_logger.addHandler(handler)

        logger.info(f"Starting backup plan: {self.plan_record.name}")

        try:
            plan = self.plan_record.to_plan()
            self.result = run_backup(
                plan,
                self.runtime,
                orchestrator=self.orchestrator,
                list_databases=self.list_databases,
            )
            logger.info(f"Backup plan {self.plan_record.name} completed successfully")
        except BackupError as e:
            self.result = e.result
            self.error = e
            logger.error(f"Backup plan {self.plan_record.name} failed: {e}")
        except Exception as e:
            self.error = e
            logger.exception(f"Backup plan {self.plan_record.name} failed unexpectedly: {e}")
        finally:
            backup_logger.removeHandler(handler)
            self._record(handler.lines)

        return self.history_record

    def _record(self, lines: List[str]):
        history = self.history_record
        result = self.result

        history.status = 'success' if result is not None and result.succeeded and self.error is None else 'failed'
        history.completed_at = datetime.utcnow()
        if result is not None:
            history.duration_seconds = result.duration.total_seconds()
            history.artifact_name = result.name
            history.file_size_bytes = result.size
        if self.error is not None:
            history.error_message = str(self.error)
        history.logs = '\n'.join(lines)
        db.session.commit()


def execute_backup_plan(plan_id: int, allow_disabled: bool = False) -> BackupHistory:
    """
    Execute a backup plan by ID.

    Args:
        plan_id: ID of BackupPlan to execute
        allow_disabled: If True, allow execution of disabled plans (for manual triggers)

    Returns:
        BackupHistory record with execution results

    Raises:
        ValueError: If plan not found, or if disabled and not allowed
    """
    plan_record = db.session.get(BackupPlan, plan_id)

    if not plan_record:
        raise ValueError(f"Backup plan not found: {plan_id}")

    if not plan_record.enabled and not allow_disabled:
        raise ValueError(f"Backup plan is disabled: {plan_record.name}")

    executor = BackupExecutor(plan_record, RuntimeConfig.from_mapping(current_app.config))
    return executor.execute()


def execute_backup_plan_by_name(plan_name: str) -> BackupHistory:
    """
    Execute a backup plan by name.

    Raises:
        ValueError: If plan not found or disabled
    """
    plan_record = BackupPlan.query.filter_by(name=plan_name).first()

    if not plan_record:
        raise ValueError(f"Backup plan not found: {plan_name}")

    if not plan_record.enabled:
        raise ValueError(f"Backup plan is disabled: {plan_name}")

    executor = BackupExecutor(plan_record, RuntimeConfig.from_mapping(current_app.config))
    return executor.execute()
