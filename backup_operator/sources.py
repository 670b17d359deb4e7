"""
Backup sources run by the worker, one per plan kind.

Each source runs the dump tool of its database and hands the result to the
destination as one artifact named ``<name>-<timestamp><suffix>``.
"""

import logging
import os
import subprocess
import tempfile
from datetime import datetime, timezone
from typing import List, Optional

from backup_operator.backup import BackupObject, Destination, Source

logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when a dump tool cannot be run or fails."""


def artifact_id(name: str, suffix: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{name}-{now.strftime('%Y%m%d-%H%M%S')}{suffix}"


class CommandSource(Source):
    """
    Source streaming the standard output of a command into the destination.

    Subclasses set ``name`` and ``suffix`` and implement ``command()``.
    """

    name: str = ''
    suffix: str = ''

    def command(self) -> List[str]:
        raise NotImplementedError

    def stream(self, destination: Destination) -> int:
        """
        Run the command and upload its output while it is produced.

        Raises:
            SourceError: If the command cannot be started or exits non-zero
        """
        command = self.command()
        logger.info(f"Running {command[0]}")

        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=stderr)
            except OSError as e:
                raise SourceError(f"Cannot run {command[0]}: {e}") from e

            with process:
                size = destination.store(
                    BackupObject(id=artifact_id(self.name, self.suffix), data=process.stdout)
                )
                returncode = process.wait()

            if returncode != 0:
                stderr.seek(0)
                message = stderr.read().decode('utf-8', errors='replace').strip()
                raise SourceError(f"{command[0]} exited with {returncode}: {message}")

        return size


class MongoDBSource(CommandSource):
    """Gzipped mongodump archive of every database behind ``uri``"""

    name = 'mongodb'
    suffix = '.archive.gz'

    def __init__(self, uri: str):
        self.uri = uri

    def command(self) -> List[str]:
        return ['mongodump', f'--uri={self.uri}', '--archive', '--gzip']


class ConsulSource(Source):
    """
    Consul snapshot of the cluster reachable at ``address``.

    ``consul snapshot save`` only writes to a file, so the snapshot goes
    through a temporary directory before it is uploaded.
    """

    name = 'consul'
    suffix = '.snap'

    def __init__(self, address: str):
        self.address = address

    def command(self, path: str) -> List[str]:
        return ['consul', 'snapshot', 'save', f'-http-addr={self.address}', path]

    def stream(self, destination: Destination) -> int:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, f'{self.name}{self.suffix}')
            command = self.command(path)
            logger.info(f"Running {command[0]} snapshot save")
            try:
                result = subprocess.run(command, capture_output=True)
            except OSError as e:
                raise SourceError(f"Cannot run {command[0]}: {e}") from e
            if result.returncode != 0:
                message = result.stderr.decode('utf-8', errors='replace').strip()
                raise SourceError(f"{command[0]} exited with {result.returncode}: {message}")

            with open(path, 'rb') as f:
                return destination.store(BackupObject(id=artifact_id(self.name, self.suffix), data=f))
