import pytest

from panelplay.lib.settings import Settings
from panelplay.lib.stations import ID_ALPHABET, ID_LENGTH, StationCatalog, generate_id, parse_legacy


def test_generated_ids_use_the_station_alphabet():
    station_id = generate_id()
    assert len(station_id) == ID_LENGTH
    assert set(station_id) <= set(ID_ALPHABET)


@pytest.mark.parametrize("entry, expected", [
    ("Lofi - http://x/stream - abc123", {"id": "abc123", "name": "Lofi", "url": "http://x/stream"}),
    ("just a name", None),
    (" - http://x/stream", None),
    ("a - b - c - d", None),
])
def test_parse_legacy(entry, expected):
    assert parse_legacy(entry) == expected


def test_legacy_strings_are_migrated_once():
    settings = Settings({"radios": [
        "Lofi - http://x/stream - r1",
        "Synthwave - http://y/stream",
        "garbage",
    ]})
    writes = []
    settings.on_change("radios", lambda key, value: writes.append(value))

    catalog = StationCatalog(settings)
    stations = catalog.stations()

    assert [s["name"] for s in stations] == ["Lofi", "Synthwave"]
    assert stations[0]["id"] == "r1"
    assert len(stations[1]["id"]) == ID_LENGTH
    assert settings.get("radios") == stations
    assert len(writes) == 0  # handler connected after the migration

    StationCatalog(settings)
    assert settings.get("radios") == stations


def test_structured_records_are_not_rewritten():
    records = [{"id": "r1", "name": "Lofi", "url": "http://x/stream"}]
    settings = Settings({"radios": records})
    writes = []
    settings.on_change("radios", lambda key, value: writes.append(value))
    StationCatalog(settings).load()
    assert writes == []


def test_no_stations_by_default():
    assert StationCatalog(Settings({})).stations() == []


def test_add_update_remove():
    catalog = StationCatalog(Settings({"radios": []}))
    station = catalog.add(" Lofi ", "http://x/stream")
    assert station["name"] == "Lofi"

    updated = catalog.update(station["id"], name="Lofi Girl", url="  ")
    assert updated == {"id": station["id"], "name": "Lofi Girl", "url": "http://x/stream"}
    assert catalog.target(station["id"]).name == "Lofi Girl"
    assert catalog.update("nope", name="x") is None

    assert catalog.remove(station["id"]) is True
    assert catalog.remove(station["id"]) is False
    assert catalog.get(station["id"]) is None
    assert catalog.target(station["id"]) is None


def test_add_rejects_blank_fields():
    catalog = StationCatalog(Settings({}))
    with pytest.raises(ValueError):
        catalog.add("Lofi", "   ")


def test_returned_records_are_copies():
    catalog = StationCatalog(Settings({}))
    station = catalog.add("Lofi", "http://x/stream")
    station["name"] = "mutated"
    assert catalog.get(station["id"])["name"] == "Lofi"
