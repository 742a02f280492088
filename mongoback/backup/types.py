"""
Data types shared by the backup core.

Plans, runtime configuration and attempt contexts are immutable; a Result is
filled in incrementally while an attempt progresses.
"""

import os
import shlex
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigError


DEFAULT_TIMEOUT_MINUTES = 60
DEFAULT_PBKDF2_ITERATIONS = 480000


class BackupMode(str, Enum):
    SINGLE = 'single'
    DATABASE = 'database'


class BackupStatus(str, Enum):
    SUCCESS = 'success'
    FAILED = 'failed'


@dataclass(frozen=True)
class Target:
    """Connection and selection settings for mongodump."""

    uri: str = ''
    host: str = ''
    port: int = 27017
    username: str = ''
    password: str = ''
    database: str = ''
    collection: str = ''
    exclude_collections: Tuple[str, ...] = ()
    exclude_databases: Tuple[str, ...] = ()
    params: str = ''


@dataclass(frozen=True)
class SchedulerSettings:
    cron: str = ''
    retention: int = 0
    timeout: int = DEFAULT_TIMEOUT_MINUTES  # minutes


@dataclass(frozen=True)
class EncryptionConfig:
    passphrase: str
    iterations: int = DEFAULT_PBKDF2_ITERATIONS


@dataclass(frozen=True)
class SFTPConfig:
    host: str
    port: int = 22
    username: str = ''
    password: str = ''
    private_key: str = ''
    passphrase: str = ''
    dir: str = ''


@dataclass(frozen=True)
class S3Config:
    bucket: str
    access_key: str = ''
    secret_key: str = ''
    region: str = 'us-east-1'
    endpoint_url: str = ''
    prefix: str = ''
    storage_class: str = ''


@dataclass(frozen=True)
class GCloudConfig:
    bucket: str
    key_file_path: str = ''


@dataclass(frozen=True)
class AzureConfig:
    container_name: str
    connection_string: str


@dataclass(frozen=True)
class RcloneConfig:
    bucket: str
    config_file_path: str = ''
    config_section: str = ''


_TUPLE_FIELDS = ('exclude_collections', 'exclude_databases')


def _build_section(cls, section: str, data: Any):
    """Instantiate a config dataclass from a mapping, rejecting unknown keys."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"'{section}' must be an object")

    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(sorted(unknown))}")

    values = dict(data)
    for f in fields(cls):
        if f.name not in values or f.type not in (int, str):
            continue
        value = values[f.name]
        # bool is an int subclass but never a valid count or port
        if f.type is int and (not isinstance(value, int) or isinstance(value, bool)):
            raise ConfigError(f"'{section}.{f.name}' must be an integer")
        if f.type is str and not isinstance(value, str):
            raise ConfigError(f"'{section}.{f.name}' must be a string")

    for name in _TUPLE_FIELDS:
        if name in values:
            items = values[name] or []
            if isinstance(items, str) or not isinstance(items, (list, tuple)):
                raise ConfigError(f"'{section}.{name}' must be a list")
            values[name] = tuple(str(item) for item in items)

    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid '{section}' configuration: {e}") from e


@dataclass(frozen=True)
class Plan:
    """A named backup job's full configuration."""

    name: str
    target: Target = field(default_factory=Target)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    mode: BackupMode = BackupMode.SINGLE
    encryption: Optional[EncryptionConfig] = None
    sftp: Optional[SFTPConfig] = None
    s3: Optional[S3Config] = None
    gcloud: Optional[GCloudConfig] = None
    azure: Optional[AzureConfig] = None
    rclone: Optional[RcloneConfig] = None

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> 'Plan':
        """
        Build a plan from a JSON-compatible mapping.

        Args:
            name: Plan name
            data: Mapping with 'target', 'scheduler', 'mode' and the optional
                'encryption', 'sftp', 's3', 'gcloud', 'azure', 'rclone' sections

        Returns:
            Plan instance

        Raises:
            ConfigError: If the mapping describes an invalid plan
        """
        if not name or not isinstance(name, str):
            raise ConfigError("Plan name is required")
        if os.sep in name or name in ('.', '..'):
            raise ConfigError(f"Invalid plan name: {name}")
        if not isinstance(data, Mapping):
            raise ConfigError("Plan configuration must be an object")

        sections = {
            'target': Target,
            'scheduler': SchedulerSettings,
            'encryption': EncryptionConfig,
            'sftp': SFTPConfig,
            's3': S3Config,
            'gcloud': GCloudConfig,
            'azure': AzureConfig,
            'rclone': RcloneConfig,
        }
        unknown = set(data) - set(sections) - {'mode'}
        if unknown:
            raise ConfigError(f"Unknown plan sections: {', '.join(sorted(unknown))}")

        kwargs: Dict[str, Any] = {'name': name}
        for section, section_cls in sections.items():
            if data.get(section) is not None:
                kwargs[section] = _build_section(section_cls, section, data[section])

        try:
            kwargs['mode'] = BackupMode(data.get('mode') or BackupMode.SINGLE.value)
        except ValueError:
            raise ConfigError(f"Unknown mode: '{data.get('mode')}'")

        plan = cls(**kwargs)
        plan.validate()
        return plan

    def validate(self):
        """
        Check field-level constraints.

        Mode combinations (excluded databases, URI requirement for the
        per-database mode) are checked when the plan is run.

        Raises:
            ConfigError: If a constraint is violated
        """
        target = self.target
        if target.uri and target.host:
            raise ConfigError("Target URI and host/port are mutually exclusive")
        if not target.uri and not target.host:
            raise ConfigError("Target requires either a URI or a host")
        if self.scheduler.retention < 0:
            raise ConfigError("Retention must be zero or a positive number")
        if self.scheduler.timeout <= 0:
            raise ConfigError("Timeout must be a positive number of minutes")
        if target.params:
            try:
                shlex.split(target.params)
            except ValueError as e:
                raise ConfigError(f"Invalid mongodump parameters '{target.params}': {e}") from e
        if self.encryption is not None and not self.encryption.passphrase:
            raise ConfigError("Encryption requires a passphrase")
        if self.encryption is not None and self.encryption.iterations <= 0:
            raise ConfigError("Encryption iterations must be a positive number")
        if self.sftp is not None and not self.sftp.host:
            raise ConfigError("SFTP destination requires a host")
        if self.s3 is not None and not self.s3.bucket:
            raise ConfigError("S3 destination requires a bucket")
        if self.gcloud is not None and not self.gcloud.bucket:
            raise ConfigError("GCloud destination requires a bucket")
        if self.azure is not None and not (self.azure.container_name and self.azure.connection_string):
            raise ConfigError("Azure destination requires a container name and a connection string")
        if self.rclone is not None and not self.rclone.bucket:
            raise ConfigError("Rclone destination requires a bucket")


@dataclass(frozen=True)
class RuntimeConfig:
    """Process-wide paths and flags, read-only during a run."""

    temp_dir: str
    storage_dir: str
    mongodump_path: str = 'mongodump'
    state_file: str = 'mongoback.db'

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> 'RuntimeConfig':
        """Build runtime settings from a Flask config (or any mapping)."""
        return cls(
            temp_dir=config['TEMP_DIR'],
            storage_dir=config['STORAGE_DIR'],
            mongodump_path=config.get('MONGODUMP_PATH') or 'mongodump',
            state_file=config.get('STATE_FILE') or 'mongoback.db',
        )


@dataclass(frozen=True)
class AttemptContext:
    """Everything one backup attempt needs; derive() creates per-database children."""

    plan: Plan
    runtime: RuntimeConfig
    plan_dir: str
    started_at: datetime
    name: str
    database: str

    @classmethod
    def create(cls, plan: Plan, runtime: RuntimeConfig,
               started_at: Optional[datetime] = None) -> 'AttemptContext':
        return cls(
            plan=plan,
            runtime=runtime,
            plan_dir=os.path.join(runtime.storage_dir, plan.name),
            started_at=started_at or datetime.now(timezone.utc),
            name=plan.name,
            database=plan.target.database,
        )

    def derive(self, database: str) -> 'AttemptContext':
        """Return a new context targeting a single database of this plan."""
        return replace(self, database=database, name=f"{self.plan.name}-{database}")

    @property
    def epoch(self) -> int:
        return int(self.started_at.timestamp())


@dataclass
class Result:
    """Outcome record of an attempt, seeded to failure."""

    plan: str
    timestamp: datetime
    status: BackupStatus = BackupStatus.FAILED
    duration: timedelta = timedelta(0)
    name: Optional[str] = None
    size: int = 0

    @classmethod
    def pending(cls, ctx: AttemptContext) -> 'Result':
        return cls(plan=ctx.plan.name, timestamp=ctx.started_at.astimezone(timezone.utc))

    @property
    def succeeded(self) -> bool:
        return self.status == BackupStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'plan': self.plan,
            'timestamp': self.timestamp.isoformat(),
            'status': self.status.value,
            'duration': self.duration.total_seconds(),
            'name': self.name,
            'size': self.size,
        }
