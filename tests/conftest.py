"""
Shared pytest fixtures for Mongoback tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Plans, runtime settings and attempt contexts
- A fake mongodump that writes archives into the temp directory
- Mock fixtures for external services (S3, SSH)
"""

import json
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from mongoback import create_app, db as _db
from mongoback.models import BackupPlan, BackupHistory
from mongoback.backup.dump import DumpArtifacts, archive_paths
from mongoback.backup.types import AttemptContext, Plan, RuntimeConfig


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing', overrides={
        'TEMP_DIR': os.path.join(temp_dir, 'tmp'),
        'STORAGE_DIR': os.path.join(temp_dir, 'storage'),
    })

    yield app

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def runtime(tmp_path):
    """Runtime settings with temp and storage directories under tmp_path."""
    temp_dir = tmp_path / 'tmp'
    storage_dir = tmp_path / 'storage'
    temp_dir.mkdir()
    storage_dir.mkdir()
    return RuntimeConfig(temp_dir=str(temp_dir), storage_dir=str(storage_dir))


@pytest.fixture
def plan_config():
    """Minimal valid plan configuration (single mode, host target)."""
    return {
        'target': {'host': 'localhost', 'port': 27017},
        'scheduler': {'cron': '0 2 * * *', 'retention': 0, 'timeout': 60},
    }


@pytest.fixture
def make_plan(plan_config):
    """
    Factory building a Plan from the base configuration.

    Keyword arguments replace whole sections, e.g.
    make_plan(target={'uri': 'mongodb://db'}, mode='database').
    """
    def _make(name='test', **sections):
        data = dict(plan_config)
        data.update(sections)
        return Plan.from_dict(name, data)
    return _make


@pytest.fixture
def make_context(runtime):
    """Factory building an AttemptContext for a plan."""
    def _make(plan, started_at=None):
        return AttemptContext.create(plan, runtime, started_at)
    return _make


@pytest.fixture
def fake_dumper():
    """
    Stand-in for run_dump that writes a small archive and log into the temp
    directory. Records every context it was called with in .calls.
    """
    class FakeDumper:
        def __init__(self):
            self.calls = []
            self.payload = b'archive-data'

        def __call__(self, ctx):
            self.calls.append(ctx)
            archive, log = archive_paths(ctx)
            with open(archive, 'wb') as f:
                f.write(self.payload)
            with open(log, 'w') as f:
                f.write('done dumping')
            return DumpArtifacts(archive=archive, log=log)

    return FakeDumper()


@pytest.fixture(scope='function')
def plan_record(db, plan_config):
    """
    Create a stored backup plan.
    """
    record = BackupPlan(
        name='test_plan',
        description='Test backup plan',
        enabled=True,
        config=json.dumps(plan_config)
    )
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture(scope='function')
def backup_history(db, plan_record):
    """
    Create a finished backup history record.
    """
    started = datetime(2024, 1, 15, 12, 0, 0)
    history = BackupHistory(
        plan_id=plan_record.id,
        status='success',
        started_at=started,
        completed_at=started + timedelta(seconds=5),
        duration_seconds=5.0,
        artifact_name='test_plan-1705320000.gz',
        file_size_bytes=1024000,
        logs='[2024-01-15 12:00:00] INFO New dump\n[2024-01-15 12:00:05] INFO Dump succeeded'
    )
    db.session.add(history)
    db.session.commit()
    return history


@pytest.fixture
def started_at():
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('mongoback.backup.uploaders.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh
