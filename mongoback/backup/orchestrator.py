"""
Single-database backup chain.

Workflow:
1. Dump the database to the temp directory
2. Create the plan directory
3. Move the archive (and log) into the plan directory
4. Apply retention
5. Encrypt the archive (if configured)
6. Upload to each configured destination, in order
7. Mark the result as successful

Any failing stage stops the chain; the partially filled Result is attached to
the raised error.
"""

import logging
import os
import shutil
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from .dump import DumpArtifacts, ENCRYPTED_SUFFIX, run_dump
from .encryption import FileEncryptor
from .errors import BackupError, RetentionFailed, StageFailed, UnexpectedFailure, UploadFailed
from .retention import apply_retention
from .types import AttemptContext, BackupStatus, Result
from .uploaders import Uploader, build_uploaders

logger = logging.getLogger(__name__)


class BackupOrchestrator:
    """
    Runs the dump → stage → move → retain → encrypt → upload chain for one
    attempt context.
    """

    def __init__(self,
                 dumper: Callable[[AttemptContext], DumpArtifacts] = run_dump,
                 uploaders: Optional[Sequence[Uploader]] = None,
                 encryptor_factory=FileEncryptor):
        """
        Initialize the orchestrator.

        Args:
            dumper: Callable producing the dump artifacts for a context
            uploaders: Fixed uploader sequence; when None, the uploaders
                configured on each plan are used
            encryptor_factory: Callable building an encryptor from an
                EncryptionConfig
        """
        self.dumper = dumper
        self.uploaders = uploaders
        self.encryptor_factory = encryptor_factory

    def run(self, ctx: AttemptContext) -> Result:
        """
        Execute the chain.

        Args:
            ctx: Attempt context

        Returns:
            Successful Result

        Raises:
            BackupError: On the first failing stage, with .result set to the
                partial Result
        """
        result = Result.pending(ctx)
        try:
            self._run_stages(ctx, result)
        except BackupError as e:
            e.result = result
            logger.error(f"[{ctx.name}] Backup failed: {e}")
            raise
        except Exception as e:
            logger.exception(f"[{ctx.name}] Backup failed unexpectedly: {e}")
            raise UnexpectedFailure(f"Unexpected error: {e}", result=result) from e
        return result

    def _run_stages(self, ctx: AttemptContext, result: Result):
        artifacts = self.dumper(ctx)
        result.name = os.path.basename(artifacts.archive)
        logger.info(f"[{ctx.name}] New dump {artifacts.archive} (log: {artifacts.log or 'none'})")

        self._stage(ctx)
        file_path = self._move(ctx, artifacts, result)

        retention = ctx.plan.scheduler.retention
        if retention > 0:
            try:
                apply_retention(ctx.plan_dir, retention)
            except RetentionFailed as e:
                raise RetentionFailed(f"Retention job failed: {e}", failed_paths=e.failed_paths) from e

        if ctx.plan.encryption is not None:
            file_path = self._encrypt(ctx, file_path)

        self._upload(ctx, file_path)

        result.status = BackupStatus.SUCCESS
        result.duration = datetime.now(timezone.utc) - ctx.started_at
        logger.info(
            f"[{ctx.name}] Dump succeeded: {result.name} "
            f"({result.size / 1024 / 1024:.2f} MB) in {result.duration}"
        )

    def _stage(self, ctx: AttemptContext):
        try:
            os.makedirs(ctx.plan_dir, exist_ok=True)
        except OSError as e:
            raise StageFailed(
                'mkdir',
                f"Creating dir {ctx.plan_dir} in {ctx.runtime.storage_dir} failed: {e}",
            ) from e

    def _move(self, ctx: AttemptContext, artifacts: DumpArtifacts, result: Result) -> str:
        archive = artifacts.archive
        try:
            result.size = os.stat(archive).st_size
        except OSError as e:
            raise StageFailed('stat', f"Stat file {archive} failed: {e}") from e

        destination = os.path.join(ctx.plan_dir, os.path.basename(archive))
        try:
            shutil.move(archive, destination)
        except OSError as e:
            raise StageFailed('move', f"Moving file from {archive} to {ctx.plan_dir} failed: {e}") from e

        if artifacts.log:
            log_destination = os.path.join(ctx.plan_dir, os.path.basename(artifacts.log))
            try:
                shutil.move(artifacts.log, log_destination)
            except OSError as e:
                raise StageFailed(
                    'move', f"Moving file from {artifacts.log} to {ctx.plan_dir} failed: {e}"
                ) from e
        else:
            logger.debug(f"[{ctx.name}] No dump log was generated")

        return destination

    def _encrypt(self, ctx: AttemptContext, file_path: str) -> str:
        encrypted_path = f"{file_path}{ENCRYPTED_SUFFIX}"
        encryptor = self.encryptor_factory(ctx.plan.encryption)
        output = encryptor.encrypt(file_path, encrypted_path)
        logger.info(f"[{ctx.name}] Encryption finished {output}")

        try:
            os.remove(file_path)
        except OSError as e:
            logger.warning(f"[{ctx.name}] Removing unencrypted file {file_path} failed: {e}")

        return encrypted_path

    def _upload(self, ctx: AttemptContext, file_path: str):
        uploaders = self.uploaders if self.uploaders is not None else build_uploaders(ctx.plan)
        for uploader in uploaders:
            try:
                output = uploader.upload(file_path, ctx.plan)
            except UploadFailed:
                raise
            except Exception as e:
                raise UploadFailed(uploader.kind, f"{uploader.kind} upload failed: {e}") from e
            logger.info(f"[{ctx.name}] {output}")
