import json

import pytest

from backup_scheduler.destinations import DestinationRegistry
from backup_scheduler.domain.destination import Destination, DestinationType
from backup_scheduler.errors import InvalidDestination


def test_from_file(tmp_path):
    path = tmp_path / "destinations.json"
    path.write_text(json.dumps([
        {"id": "local", "name": "Local", "path": "/backup"},
        {"id": "offsite", "type": "remote", "url": "https://backups.example.com", "enabled": False},
    ]))

    registry = DestinationRegistry.from_file(path)

    assert [d.id for d in registry.list()] == ["local", "offsite"]
    assert registry.get("offsite").type == DestinationType.REMOTE
    assert not registry.get("offsite").enabled


def test_missing_file_gives_empty_registry(tmp_path):
    assert DestinationRegistry.from_file(tmp_path / "absent.json").list() == []


def test_require():
    registry = DestinationRegistry([
        Destination(id="local"),
        Destination(id="retired", name="Retired NAS", enabled=False),
    ])

    assert registry.require("local", for_schedule=True).id == "local"
    assert registry.require("retired", for_schedule=False).id == "retired"
    with pytest.raises(InvalidDestination, match="Retired NAS"):
        registry.require("retired", for_schedule=True)
    with pytest.raises(InvalidDestination, match="Invalid destination 'nowhere'"):
        registry.require("nowhere", for_schedule=False)
