"""
Unit tests for the single-database backup chain (mongoback/backup/orchestrator.py).

Tests stage ordering, failure handling and retention steady state using a
fake mongodump.
"""

import os
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from mongoback.backup.dump import DumpArtifacts, archive_paths
from mongoback.backup.errors import (
    BackupError,
    DumpFailed,
    EncryptionFailed,
    RetentionFailed,
    StageFailed,
    UnexpectedFailure,
    UploadFailed,
)
from mongoback.backup.orchestrator import BackupOrchestrator
from mongoback.backup.types import BackupStatus, EncryptionConfig
from mongoback.backup.encryption import FileEncryptor, MAGIC


def _uploader(kind='s3', side_effect=None):
    uploader = MagicMock()
    uploader.kind = kind
    uploader.upload.return_value = f"{kind} upload finished"
    uploader.upload.side_effect = side_effect
    return uploader


class TestBackupOrchestrator:
    """Test BackupOrchestrator.run."""

    def test_successful_run(self, fake_dumper, make_plan, make_context, started_at, runtime):
        uploader = _uploader()
        orchestrator = BackupOrchestrator(dumper=fake_dumper, uploaders=[uploader])
        ctx = make_context(make_plan(name='orders'), started_at)

        result = orchestrator.run(ctx)

        assert result.status == BackupStatus.SUCCESS
        assert result.plan == 'orders'
        assert result.name == 'orders-1705320000.gz'
        assert result.size == len(fake_dumper.payload)
        assert result.timestamp == started_at
        assert result.duration > timedelta(0)

        # Archive and log were moved out of the temp directory
        plan_dir = os.path.join(runtime.storage_dir, 'orders')
        assert sorted(os.listdir(plan_dir)) == ['orders-1705320000.gz', 'orders-1705320000.log']
        assert os.listdir(runtime.temp_dir) == []

        uploader.upload.assert_called_once_with(
            os.path.join(plan_dir, 'orders-1705320000.gz'), ctx.plan
        )

    def test_missing_log_is_not_an_error(self, make_plan, make_context, runtime):
        def dumper(ctx):
            archive, _ = archive_paths(ctx)
            with open(archive, 'wb') as f:
                f.write(b'data')
            return DumpArtifacts(archive=archive)

        ctx = make_context(make_plan(name='p'))
        result = BackupOrchestrator(dumper=dumper, uploaders=[]).run(ctx)

        assert result.succeeded
        assert os.listdir(ctx.plan_dir) == [result.name]

    def test_dump_failure_returns_failed_result(self, make_plan, make_context, runtime, started_at):
        """A failed dump leaves no archive behind and the error carries the result."""
        dumper = MagicMock(side_effect=DumpFailed('mongodump exited with code 1, log: auth failed'))
        uploader = _uploader()
        ctx = make_context(make_plan(name='p'), started_at)

        with pytest.raises(DumpFailed) as exc_info:
            BackupOrchestrator(dumper=dumper, uploaders=[uploader]).run(ctx)

        result = exc_info.value.result
        assert result.status == BackupStatus.FAILED
        assert result.plan == 'p'
        assert result.name is None
        assert result.size == 0
        assert not os.path.exists(ctx.plan_dir)
        assert os.listdir(runtime.temp_dir) == []
        uploader.upload.assert_not_called()

    def test_stage_failure(self, fake_dumper, make_plan, make_context, runtime):
        ctx = make_context(make_plan(name='p'))
        # A regular file where the plan directory should go
        with open(ctx.plan_dir, 'w') as f:
            f.write('in the way')

        with pytest.raises(StageFailed) as exc_info:
            BackupOrchestrator(dumper=fake_dumper, uploaders=[]).run(ctx)

        assert exc_info.value.operation == 'mkdir'
        assert exc_info.value.result.name == f"p-{ctx.epoch}.gz"

    def test_move_failure(self, make_plan, make_context):
        def dumper(ctx):
            return DumpArtifacts(archive='/nonexistent/p-1.gz')

        with pytest.raises(StageFailed) as exc_info:
            BackupOrchestrator(dumper=dumper, uploaders=[]).run(make_context(make_plan(name='p')))

        assert exc_info.value.operation == 'stat'

    def test_retention_failure(self, fake_dumper, make_plan, make_context, monkeypatch):
        def failing_retention(directory, retention):
            raise RetentionFailed('cannot remove', failed_paths=['/x'])

        monkeypatch.setattr('mongoback.backup.orchestrator.apply_retention', failing_retention)
        uploader = _uploader()
        ctx = make_context(make_plan(scheduler={'retention': 2}))

        with pytest.raises(RetentionFailed, match='Retention job failed') as exc_info:
            BackupOrchestrator(dumper=fake_dumper, uploaders=[uploader]).run(ctx)

        assert exc_info.value.failed_paths == ['/x']
        assert exc_info.value.result.size == len(fake_dumper.payload)
        uploader.upload.assert_not_called()

    def test_retention_disabled_keeps_everything(self, fake_dumper, make_plan, make_context, started_at):
        plan = make_plan(name='p', scheduler={'retention': 0})
        orchestrator = BackupOrchestrator(dumper=fake_dumper, uploaders=[])

        for i in range(4):
            orchestrator.run(make_context(plan, started_at + timedelta(minutes=i)))

        assert len(os.listdir(make_context(plan).plan_dir)) == 8

    def test_retention_steady_state(self, make_plan, make_context, started_at, runtime):
        """After more runs than the retention count, exactly N archives and N logs remain."""
        calls = []

        def dumper(ctx):
            archive, log = archive_paths(ctx)
            for path in (archive, log):
                with open(path, 'wb') as f:
                    f.write(b'x')
                # mtime follows the attempt start time
                os.utime(path, (ctx.epoch, ctx.epoch))
            calls.append(ctx)
            return DumpArtifacts(archive=archive, log=log)

        plan = make_plan(name='p', scheduler={'retention': 3})
        orchestrator = BackupOrchestrator(dumper=dumper, uploaders=[])

        for i in range(5):
            orchestrator.run(make_context(plan, started_at + timedelta(minutes=i)))

        plan_dir = os.path.join(runtime.storage_dir, 'p')
        remaining = sorted(os.listdir(plan_dir))
        assert len([name for name in remaining if name.endswith('.gz')]) == 3
        assert len([name for name in remaining if name.endswith('.log')]) == 3
        # The three newest attempts survive
        assert remaining[0] == f"p-{calls[2].epoch}.gz"

    def test_encryption(self, fake_dumper, make_plan, make_context):
        uploader = _uploader()
        plan = make_plan(name='p', encryption={'passphrase': 'secret', 'iterations': 1000})
        ctx = make_context(plan)

        result = BackupOrchestrator(dumper=fake_dumper, uploaders=[uploader]).run(ctx)

        encrypted = os.path.join(ctx.plan_dir, f"p-{ctx.epoch}.gz.encrypted")
        assert result.succeeded
        assert not os.path.exists(os.path.join(ctx.plan_dir, f"p-{ctx.epoch}.gz"))
        with open(encrypted, 'rb') as f:
            assert f.read(len(MAGIC)) == MAGIC
        uploader.upload.assert_called_once_with(encrypted, plan)

        restored = os.path.join(ctx.plan_dir, 'restored.gz')
        FileEncryptor(EncryptionConfig(passphrase='secret', iterations=1000)).decrypt(encrypted, restored)
        with open(restored, 'rb') as f:
            assert f.read() == fake_dumper.payload

    def test_encryption_failure_skips_uploads(self, fake_dumper, make_plan, make_context):
        encryptor = MagicMock()
        encryptor.encrypt.side_effect = EncryptionFailed('no space left')
        uploader = _uploader()
        ctx = make_context(make_plan(encryption={'passphrase': 'secret'}))

        with pytest.raises(EncryptionFailed):
            BackupOrchestrator(
                dumper=fake_dumper,
                uploaders=[uploader],
                encryptor_factory=lambda config: encryptor
            ).run(ctx)

        uploader.upload.assert_not_called()

    def test_uploads_run_in_order_and_stop_on_failure(self, fake_dumper, make_plan, make_context):
        first = _uploader('sftp')
        second = _uploader('s3', side_effect=UploadFailed('s3', 'S3 upload failed (AccessDenied)'))
        third = _uploader('gcloud')

        with pytest.raises(UploadFailed) as exc_info:
            BackupOrchestrator(dumper=fake_dumper, uploaders=[first, second, third]).run(
                make_context(make_plan())
            )

        first.upload.assert_called_once()
        third.upload.assert_not_called()
        assert exc_info.value.kind == 's3'
        assert exc_info.value.result.status == BackupStatus.FAILED
        # Archive stays in the plan directory
        assert exc_info.value.result.size > 0

    def test_unexpected_uploader_error_is_wrapped(self, fake_dumper, make_plan, make_context):
        uploader = _uploader('rclone', side_effect=RuntimeError('boom'))

        with pytest.raises(UploadFailed, match='rclone upload failed: boom') as exc_info:
            BackupOrchestrator(dumper=fake_dumper, uploaders=[uploader]).run(make_context(make_plan()))

        assert isinstance(exc_info.value, BackupError)
        assert exc_info.value.result is not None

    def test_unexpected_stage_error_carries_result(self, fake_dumper, make_plan, make_context):
        def broken_factory(config):
            raise ValueError('unsupported key size')

        ctx = make_context(make_plan(encryption={'passphrase': 'secret'}))

        with pytest.raises(UnexpectedFailure, match='unsupported key size') as exc_info:
            BackupOrchestrator(dumper=fake_dumper, uploaders=[], encryptor_factory=broken_factory).run(ctx)

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert exc_info.value.result.status == BackupStatus.FAILED
        assert exc_info.value.result.name == f"test-{ctx.epoch}.gz"

    def test_uses_plan_uploaders_by_default(self, fake_dumper, make_plan, make_context, monkeypatch):
        uploader = _uploader()
        built = []

        def fake_build(plan):
            built.append(plan)
            return [uploader]

        monkeypatch.setattr('mongoback.backup.orchestrator.build_uploaders', fake_build)
        ctx = make_context(make_plan())

        BackupOrchestrator(dumper=fake_dumper).run(ctx)

        assert built == [ctx.plan]
        uploader.upload.assert_called_once()

    @freeze_time('2024-01-15 12:00:42')
    def test_duration_measured_from_start(self, fake_dumper, make_plan, make_context, started_at):
        result = BackupOrchestrator(dumper=fake_dumper, uploaders=[]).run(make_context(make_plan(), started_at))

        assert result.duration == timedelta(seconds=42)
