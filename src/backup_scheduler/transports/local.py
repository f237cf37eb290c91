import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import List

from backup_scheduler.domain.destination import Destination
from backup_scheduler.errors import TransportFailure
from backup_scheduler.transports.protocol import RemoteFile, Transport, TransportResult

logger = logging.getLogger(__name__)


class LocalTransport(Transport):
    """
    Destination backed by a directory on this host.
    """

    def _resolve(self, path: str, destination: Destination) -> str:
        root = os.path.realpath(destination.path)
        target = os.path.realpath(os.path.join(root, path.lstrip("/")))
        if target != root and not target.startswith(root + os.sep):
            raise TransportFailure(f"Path '{path}' escapes destination root {root}")
        return target

    async def delete(self, path: str, destination: Destination) -> TransportResult:
        target = self._resolve(path, destination)
        try:
            await asyncio.to_thread(os.remove, target)
        except FileNotFoundError:
            logger.debug("%s already absent from %s", path, destination.id)
            return TransportResult(success=True, message=f"{path} already absent")
        except OSError as e:
            return TransportResult(success=False, message=f"Failed to delete {path}: {e}")
        return TransportResult(success=True, message=f"Deleted {path}")

    async def list(self, prefix: str, destination: Destination) -> List[RemoteFile]:
        directory = self._resolve(prefix, destination)
        try:
            return await asyncio.to_thread(self._scan, directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise TransportFailure(f"Failed to list {prefix}: {e}") from e

    @staticmethod
    def _scan(directory: str) -> List[RemoteFile]:
        files = []
        with os.scandir(directory) as entries:
            for entry in entries:
                if not entry.is_file():
                    continue
                stat = entry.stat()
                files.append(RemoteFile(
                    name=entry.name,
                    size=stat.st_size,
                    modified_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))
        return sorted(files, key=lambda f: f.name)
