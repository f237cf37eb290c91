import logging
from typing import Dict, List
from urllib.parse import quote

import aiohttp

from backup_scheduler.domain.destination import Destination
from backup_scheduler.errors import TransportFailure
from backup_scheduler.transports.protocol import RemoteFile, Transport, TransportResult

logger = logging.getLogger(__name__)


class HttpTransport(Transport):
    """
    Remote destination exposed over HTTP.

    ``DELETE {url}/{path}`` removes a file (404 counts as already removed) and
    ``GET {url}/{prefix}?list=1`` returns a JSON array of
    ``{"name", "size", "modified_time"}`` objects.
    """

    def __init__(self, timeout: float = 60.0):
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _url(self, path: str, destination: Destination) -> str:
        if not destination.url:
            raise TransportFailure(f"Destination '{destination.id}' has no URL")
        return f"{destination.url.rstrip('/')}/{quote(path.lstrip('/'))}"

    def _headers(self, destination: Destination) -> Dict[str, str]:
        if destination.auth_token:
            return {"Authorization": f"Bearer {destination.auth_token}"}
        return {}

    async def delete(self, path: str, destination: Destination) -> TransportResult:
        url = self._url(path, destination)
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.delete(url, headers=self._headers(destination)) as response:
                    if response.status == 404:
                        return TransportResult(success=True, message=f"{path} already absent")
                    if response.status >= 400:
                        body = await response.text()
                        return TransportResult(success=False, message=f"HTTP {response.status}: {body[:200]}")
                    return TransportResult(success=True, message=f"Deleted {path}")
        except aiohttp.ClientError as e:
            raise TransportFailure(f"Failed to delete {path}: {e}") from e

    async def list(self, prefix: str, destination: Destination) -> List[RemoteFile]:
        url = self._url(prefix, destination)
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, params={"list": "1"}, headers=self._headers(destination)) as response:
                    if response.status == 404:
                        return []
                    if response.status >= 400:
                        raise TransportFailure(f"Failed to list {prefix}: HTTP {response.status}")
                    payload = await response.json()
        except aiohttp.ClientError as e:
            raise TransportFailure(f"Failed to list {prefix}: {e}") from e
        return [RemoteFile.model_validate(item) for item in payload]
