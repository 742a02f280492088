"""
mongodump invocation.

Builds a structured argument list from an attempt context and runs it with a
hard timeout. Archives and logs are written to the runtime temp directory as
{name}-{epoch}.gz and {name}-{epoch}.log.
"""

import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import DumpFailed
from .types import AttemptContext

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = '.gz'
LOG_EXTENSION = '.log'
ENCRYPTED_SUFFIX = '.encrypted'

_ARTIFACT_RE = re.compile(r'^(?P<name>.+)-(?P<epoch>\d+)(?P<ext>\.gz(?:\.encrypted)?|\.log)$')
_URI_CREDENTIALS_RE = re.compile(r'(://[^:/@]+:)[^@]*@')


@dataclass(frozen=True)
class DumpArtifacts:
    archive: str
    log: Optional[str] = None


def archive_paths(ctx: AttemptContext) -> Tuple[str, str]:
    """
    Compute the archive and log paths for an attempt.

    Returns:
        Tuple of (archive path, log path) inside the runtime temp directory
    """
    base = os.path.join(ctx.runtime.temp_dir, f"{ctx.name}-{ctx.epoch}")
    return f"{base}{ARCHIVE_EXTENSION}", f"{base}{LOG_EXTENSION}"


def parse_archive_name(filename: str) -> Tuple[str, int]:
    """
    Recover the attempt name and epoch from an artifact filename.

    Args:
        filename: Artifact basename ({name}-{epoch}.gz, .gz.encrypted or .log)

    Returns:
        Tuple of (name, epoch seconds)

    Raises:
        ValueError: If filename does not follow the naming scheme
    """
    match = _ARTIFACT_RE.match(os.path.basename(filename))
    if not match:
        raise ValueError(f"Not a backup artifact name: {filename}")
    return match.group('name'), int(match.group('epoch'))


def build_dump_command(ctx: AttemptContext, archive: str) -> List[str]:
    """
    Build the mongodump argument list.

    The URI and the host/port form are mutually exclusive: a URI, when
    present, is the only connection selector passed.

    Args:
        ctx: Attempt context
        archive: Destination archive path

    Returns:
        Argument list suitable for subprocess (no shell involved)
    """
    target = ctx.plan.target
    cmd = [ctx.runtime.mongodump_path, f"--archive={archive}", '--gzip']

    if target.uri:
        cmd.append(f"--uri={target.uri}")
    else:
        cmd.extend([f"--host={target.host}", f"--port={target.port}"])
        if target.username and target.password:
            cmd.extend([f"--username={target.username}", f"--password={target.password}"])

    if ctx.database:
        cmd.append(f"--db={ctx.database}")
    if target.collection:
        cmd.append(f"--collection={target.collection}")

    for collection in target.exclude_collections:
        if collection:
            cmd.append(f"--excludeCollection={collection}")

    if target.params:
        cmd.extend(shlex.split(target.params))

    return cmd


def mask_command(cmd: List[str]) -> str:
    """Render a command for logging with passwords and URI credentials hidden."""
    masked = []
    hide_next = False
    for arg in cmd:
        if hide_next:
            masked.append('****')
            hide_next = False
        elif arg.startswith('--password='):
            masked.append('--password=****')
        elif arg in ('-p', '--password'):
            masked.append(arg)
            hide_next = True
        else:
            masked.append(_URI_CREDENTIALS_RE.sub(r'\1****@', arg))
    return ' '.join(shlex.quote(arg) for arg in masked)


def run_dump(ctx: AttemptContext) -> DumpArtifacts:
    """
    Run mongodump for an attempt.

    Args:
        ctx: Attempt context

    Returns:
        DumpArtifacts with the archive path and, when mongodump printed
        anything, the path of the log file holding that output

    Raises:
        DumpFailed: If mongodump cannot be started, exits non-zero or
            exceeds the plan timeout. The partial archive is removed first.
    """
    archive, log_path = archive_paths(ctx)
    cmd = build_dump_command(ctx, archive)
    timeout_minutes = ctx.plan.scheduler.timeout

    logger.debug(f"dump cmd: {mask_command(cmd)}")

    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout_minutes * 60,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        output = _fold(e.output)
        _remove_partial_archive(archive)
        raise DumpFailed(
            f"mongodump timed out after {timeout_minutes} minutes, log: {output}",
            output=output,
            timed_out=True,
        ) from e
    except subprocess.CalledProcessError as e:
        output = _fold(e.output)
        _remove_partial_archive(archive)
        raise DumpFailed(
            f"mongodump exited with code {e.returncode}, log: {output}",
            output=output,
            returncode=e.returncode,
        ) from e
    except OSError as e:
        _remove_partial_archive(archive)
        raise DumpFailed(f"Failed to run {cmd[0]}: {e}") from e

    log_file = None
    if proc.stdout:
        try:
            with open(log_path, 'wb') as f:
                f.write(proc.stdout)
            log_file = log_path
        except OSError as e:
            logger.warning(f"Writing dump log {log_path} failed: {e}")

    return DumpArtifacts(archive=archive, log=log_file)


def _fold(output) -> str:
    if not output:
        return ''
    if isinstance(output, bytes):
        output = output.decode(errors='replace')
    return output.replace('\n', ' ').strip()


def _remove_partial_archive(archive: str):
    try:
        os.remove(archive)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial archive {archive}: {e}")
