from backup_scheduler.domain.destination import Destination, DestinationType
from backup_scheduler.transports.http import HttpTransport
from backup_scheduler.transports.local import LocalTransport
from backup_scheduler.transports.protocol import RemoteFile, Transport, TransportResult


def transport_for(destination: Destination) -> Transport:
    if destination.type == DestinationType.REMOTE:
        return HttpTransport()
    return LocalTransport()


__all__ = ["HttpTransport", "LocalTransport", "RemoteFile", "Transport", "TransportResult", "transport_for"]
