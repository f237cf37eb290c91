import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from pydantic import TypeAdapter

from .domain.destination import Destination
from .errors import InvalidDestination

logger = logging.getLogger(__name__)

_DESTINATION_LIST = TypeAdapter(List[Destination])


class DestinationRegistry:
    """
    Known storage destinations, keyed by id.
    """

    def __init__(self, destinations: Iterable[Destination] = ()):
        self._destinations: Dict[str, Destination] = {d.id: d for d in destinations}

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "DestinationRegistry":
        path = Path(path)
        if not path.exists():
            logger.warning("Destinations file %s does not exist, no destinations configured", path)
            return cls()
        return cls(_DESTINATION_LIST.validate_json(path.read_bytes()))

    def add(self, destination: Destination) -> None:
        self._destinations[destination.id] = destination

    def get(self, destination_id: str) -> Optional[Destination]:
        return self._destinations.get(destination_id)

    def list(self) -> List[Destination]:
        return list(self._destinations.values())

    def require(self, destination_id: str, for_schedule: bool) -> Destination:
        """
        Resolve a destination for a new job or schedule.

        Unknown destinations are always rejected. A disabled destination
        rejects schedules, but a one-time job is accepted with a warning
        since access may be restored before it runs.
        """
        destination = self.get(destination_id)
        if destination is None:
            raise InvalidDestination(f"Invalid destination '{destination_id}'")
        if not destination.enabled:
            if for_schedule:
                raise InvalidDestination(f"Cannot create schedule: destination '{destination.display_name}' is disabled")
            logger.warning("Destination '%s' is disabled, queueing the job anyway", destination.display_name)
        return destination
