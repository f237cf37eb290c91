import pytest

from backup_scheduler.domain.destination import Destination
from backup_scheduler.errors import TransportFailure
from backup_scheduler.transports import HttpTransport, LocalTransport, transport_for
from backup_scheduler.domain.destination import DestinationType


@pytest.fixture
def destination(tmp_path) -> Destination:
    (tmp_path / "alice").mkdir()
    (tmp_path / "alice" / "backup-1.tar.gz").write_bytes(b"x" * 10)
    (tmp_path / "alice" / "backup-2.tar.gz").write_bytes(b"x" * 20)
    return Destination(id="local", path=str(tmp_path))


@pytest.mark.asyncio
async def test_delete(destination, tmp_path):
    result = await LocalTransport().delete("alice/backup-1.tar.gz", destination)

    assert result.success
    assert not (tmp_path / "alice" / "backup-1.tar.gz").exists()


@pytest.mark.asyncio
async def test_delete_missing_file_counts_as_deleted(destination):
    result = await LocalTransport().delete("alice/never-existed.tar.gz", destination)

    assert result.success
    assert "already absent" in result.message


@pytest.mark.asyncio
async def test_paths_cannot_escape_the_root(destination):
    with pytest.raises(TransportFailure, match="escapes"):
        await LocalTransport().delete("../outside.tar.gz", destination)


@pytest.mark.asyncio
async def test_list(destination):
    files = await LocalTransport().list("alice", destination)

    assert [(f.name, f.size) for f in files] == [("backup-1.tar.gz", 10), ("backup-2.tar.gz", 20)]
    assert await LocalTransport().list("bob", destination) == []


def test_transport_for():
    assert isinstance(transport_for(Destination(id="local")), LocalTransport)
    remote = Destination(id="remote", type=DestinationType.REMOTE, url="http://example.test")
    assert isinstance(transport_for(remote), HttpTransport)
