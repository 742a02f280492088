"""
Unit tests for backup executor (mongoback/backup/executor.py).

Tests mode dispatch in run_backup and BackupExecutor's history recording.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from mongoback.backup.errors import ConfigError, DumpFailed, UploadFailed
from mongoback.backup.executor import (
    BackupExecutor,
    execute_backup_plan,
    execute_backup_plan_by_name,
    run_backup,
)
from mongoback.backup.orchestrator import BackupOrchestrator
from mongoback.backup.types import BackupStatus, Result
from mongoback.models import BackupHistory


class TestRunBackup:
    """Test mode dispatch and mode validation."""

    def test_single_mode(self, fake_dumper, make_plan, runtime):
        result = run_backup(make_plan(name='p'), runtime, orchestrator=BackupOrchestrator(dumper=fake_dumper, uploaders=[]))

        assert result.succeeded
        assert len(fake_dumper.calls) == 1
        assert fake_dumper.calls[0].name == 'p'

    def test_single_mode_rejects_excluded_databases(self, make_plan, runtime):
        """Rejected before mongodump runs."""
        plan = make_plan(target={'host': 'h', 'exclude_databases': ['admin']})
        orchestrator = MagicMock()

        with pytest.raises(ConfigError, match='Cannot exclude databases') as exc_info:
            run_backup(plan, runtime, orchestrator=orchestrator)

        orchestrator.run.assert_not_called()
        assert exc_info.value.result.status == BackupStatus.FAILED
        assert exc_info.value.result.plan == 'test'

    def test_database_mode_requires_uri(self, make_plan, runtime):
        """Rejected before the database list is requested."""
        plan = make_plan(mode='database', target={'host': 'h'})
        list_databases = MagicMock()
        orchestrator = MagicMock()

        with pytest.raises(ConfigError, match='Must use a MongoDB URI'):
            run_backup(plan, runtime, orchestrator=orchestrator, list_databases=list_databases)

        list_databases.assert_not_called()
        orchestrator.run.assert_not_called()

    def test_database_mode_fans_out(self, fake_dumper, make_plan, runtime):
        plan = make_plan(name='c', mode='database', target={'uri': 'mongodb://db', 'exclude_databases': ['local']})

        result = run_backup(
            plan,
            runtime,
            orchestrator=BackupOrchestrator(dumper=fake_dumper, uploaders=[]),
            list_databases=lambda uri: ['local', 'shop']
        )

        assert result.succeeded
        assert [ctx.name for ctx in fake_dumper.calls] == ['c-shop']

    def test_started_at_is_used(self, fake_dumper, make_plan, runtime, started_at):
        result = run_backup(
            make_plan(name='p'),
            runtime,
            orchestrator=BackupOrchestrator(dumper=fake_dumper, uploaders=[]),
            started_at=started_at
        )

        assert result.name == 'p-1705320000.gz'
        assert result.timestamp == started_at


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, db, plan_record, runtime):
        executor = BackupExecutor(plan_record, runtime)

        assert executor.plan_record == plan_record
        assert executor.history_record is None
        assert executor.result is None

    def test_successful_backup(self, db, plan_record, runtime, fake_dumper):
        executor = BackupExecutor(
            plan_record,
            runtime,
            orchestrator=BackupOrchestrator(dumper=fake_dumper, uploaders=[])
        )

        history = executor.execute()

        assert history.status == 'success'
        assert history.plan_id == plan_record.id
        assert history.completed_at is not None
        assert history.artifact_name.startswith('test_plan-')
        assert history.file_size_bytes == len(fake_dumper.payload)
        assert history.duration_seconds >= 0
        assert history.error_message is None
        assert 'New dump' in history.logs
        assert 'Dump succeeded' in history.logs

    def test_failed_backup_records_error(self, db, plan_record, runtime):
        orchestrator = MagicMock()
        error = DumpFailed('mongodump exited with code 1, log: auth failed')
        error.result = Result(plan='test_plan', timestamp=datetime.now(timezone.utc))
        orchestrator.run.side_effect = error

        history = BackupExecutor(plan_record, runtime, orchestrator=orchestrator).execute()

        assert history.status == 'failed'
        assert 'auth failed' in history.error_message
        assert history.file_size_bytes == 0
        assert history.artifact_name is None

    def test_upload_failure_keeps_artifact_details(self, db, plan_record, runtime, fake_dumper):
        uploader = MagicMock()
        uploader.kind = 's3'
        uploader.upload.side_effect = UploadFailed('s3', 'S3 upload failed (AccessDenied)')

        history = BackupExecutor(
            plan_record,
            runtime,
            orchestrator=BackupOrchestrator(dumper=fake_dumper, uploaders=[uploader])
        ).execute()

        assert history.status == 'failed'
        assert history.artifact_name is not None
        assert history.file_size_bytes == len(fake_dumper.payload)
        assert 'AccessDenied' in history.error_message

    def test_invalid_stored_config(self, db, plan_record, runtime):
        plan_record.config = json.dumps({'target': {}})
        db.session.commit()

        history = BackupExecutor(plan_record, runtime).execute()

        assert history.status == 'failed'
        assert 'URI or a host' in history.error_message

    def test_unexpected_error(self, db, plan_record, runtime):
        orchestrator = MagicMock()
        orchestrator.run.side_effect = RuntimeError('boom')

        history = BackupExecutor(plan_record, runtime, orchestrator=orchestrator).execute()

        assert history.status == 'failed'
        assert history.error_message == 'boom'

    def test_history_persisted(self, db, plan_record, runtime, fake_dumper):
        BackupExecutor(
            plan_record,
            runtime,
            orchestrator=BackupOrchestrator(dumper=fake_dumper, uploaders=[])
        ).execute()

        records = BackupHistory.query.filter_by(plan_id=plan_record.id).all()
        assert len(records) == 1
        assert records[0].status == 'success'


class TestExecuteBackupPlan:
    """Test the app-context entry points."""

    @patch('mongoback.backup.executor.BackupExecutor')
    def test_execute_by_id(self, mock_executor, db, plan_record, app):
        mock_executor.return_value.execute.return_value = 'history'

        assert execute_backup_plan(plan_record.id) == 'history'

        runtime = mock_executor.call_args[0][1]
        assert runtime.temp_dir == app.config['TEMP_DIR']
        assert runtime.storage_dir == app.config['STORAGE_DIR']

    def test_execute_missing_plan(self, db):
        with pytest.raises(ValueError, match='not found'):
            execute_backup_plan(999)

    def test_execute_disabled_plan(self, db, plan_record):
        plan_record.enabled = False
        db.session.commit()

        with pytest.raises(ValueError, match='disabled'):
            execute_backup_plan(plan_record.id)

    @patch('mongoback.backup.executor.BackupExecutor')
    def test_execute_disabled_plan_allowed(self, mock_executor, db, plan_record):
        plan_record.enabled = False
        db.session.commit()

        execute_backup_plan(plan_record.id, allow_disabled=True)

        mock_executor.return_value.execute.assert_called_once()

    @patch('mongoback.backup.executor.BackupExecutor')
    def test_execute_by_name(self, mock_executor, db, plan_record):
        execute_backup_plan_by_name('test_plan')

        assert mock_executor.call_args[0][0] == plan_record

    def test_execute_by_name_missing(self, db):
        with pytest.raises(ValueError, match='not found'):
            execute_backup_plan_by_name('nope')
