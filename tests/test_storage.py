from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import numpy as np
import pytest

from infrasim.errors import ComponentNotFoundError, IndexShapeError, RecordNotFoundError
from infrasim.schemas import InfrastructureComponent, OrganizationRecord
from infrasim.storage import DOCSTORE_FILENAME, INDEX_FILENAME, SENTINEL_ID, OrganizationStore


def _record(name: str, description: str, tags, services, **metadata) -> OrganizationRecord:
    return OrganizationRecord(
        name=name,
        description=description,
        sector_tags=list(tags),
        services=list(services),
        metadata=metadata,
    )


def _acme() -> OrganizationRecord:
    return _record(
        "Acme Bank",
        "Regional bank offering consumer lending",
        ["Banking"],
        ["Lending"],
        industry="banking",
        compliance=["PCI-DSS"],
    )


def _orbit() -> OrganizationRecord:
    return _record(
        "Orbit Freight",
        "Ocean shipping and warehousing",
        ["Logistics"],
        ["Shipping"],
        industry="logistics",
    )


def _comparable(record: OrganizationRecord) -> dict:
    return record.model_dump(exclude={"id", "created_at", "updated_at"})


@pytest.mark.asyncio
async def test_bootstrap_persists_sentinel(store: OrganizationStore, store_dir: Path, embedder) -> None:
    await store.initialize()

    raw = json.loads((store_dir / DOCSTORE_FILENAME).read_text(encoding="utf-8"))
    pairs, mapping = raw
    assert pairs[0][0] == SENTINEL_ID
    assert pairs[0][1]["metadata"]["isInit"] is True
    assert pairs[0][1]["pageContent"] == "initial document"
    assert mapping == {"0": SENTINEL_ID}
    assert np.load(store_dir / INDEX_FILENAME).shape == (1, embedder.dimension)
    assert await store.get_all() == []


@pytest.mark.asyncio
async def test_concurrent_first_callers_share_one_initialization(store: OrganizationStore, embedder) -> None:
    await asyncio.gather(*(store.initialize() for _ in range(5)))

    assert embedder.calls == [["initial document"]]


@pytest.mark.asyncio
async def test_add_then_get_all_round_trips(store: OrganizationStore) -> None:
    original = _acme()

    record_id = await store.add(original)
    records = await store.get_all()

    assert record_id == original.id
    assert len(records) == 1
    assert _comparable(records[0]) == _comparable(original)
    assert records[0].updated_at >= records[0].created_at
    assert (await store.get(record_id)).name == "Acme Bank"


@pytest.mark.asyncio
async def test_duplicate_ids_are_rejected(store: OrganizationStore) -> None:
    record = _acme()
    await store.add(record)

    with pytest.raises(ValueError):
        await store.add(record)


@pytest.mark.asyncio
async def test_search_ranks_and_excludes_sentinel(store: OrganizationStore) -> None:
    assert await store.search("initial document") == []

    await store.add(_acme())
    await store.add(_orbit())

    results = await store.search("bank lending", limit=5)
    assert [hit.record.name for hit in results][0] == "Acme Bank"
    assert all(hit.record.id != SENTINEL_ID for hit in results)
    assert len(results) == 2
    assert results[0].score <= results[1].score
    assert results[0].similarity == pytest.approx(1.0 - results[0].score)

    assert len(await store.search("initial document", limit=5)) == 2
    assert len(await store.search("bank", limit=1)) == 1


@pytest.mark.asyncio
async def test_find_similar_excludes_the_record_itself(store: OrganizationStore) -> None:
    acme = _acme()
    await store.add(acme)
    await store.add(_orbit())
    await store.add(
        _record("Beacon Credit", "Consumer lending bank", ["Banking"], ["Lending"], industry="banking")
    )

    similar = await store.find_similar(acme.id, limit=5)

    names = [hit.record.name for hit in similar]
    assert "Acme Bank" not in names
    assert names[0] == "Beacon Credit"
    assert len(names) == 2

    with pytest.raises(RecordNotFoundError):
        await store.find_similar(SENTINEL_ID)


@pytest.mark.asyncio
async def test_update_refreshes_timestamp_and_reindexes(store: OrganizationStore) -> None:
    acme = _acme()
    await store.add(acme)
    before = await store.get(acme.id)

    changed = before.model_copy(update={"description": "Wealth management and private banking"})
    stored = await store.update(changed)

    assert stored.created_at == before.created_at
    assert stored.updated_at >= before.updated_at
    assert (await store.get(acme.id)).description == "Wealth management and private banking"
    hits = await store.search("wealth management", limit=1)
    assert hits[0].record.id == acme.id
    assert len(await store.get_all()) == 1

    with pytest.raises(RecordNotFoundError):
        await store.update(_orbit())


@pytest.mark.asyncio
async def test_reload_from_disk_skips_bootstrap(store: OrganizationStore, store_dir: Path, embedder) -> None:
    acme = _acme()
    await store.add(acme)

    fresh_embedder = type(embedder)()
    reloaded = OrganizationStore(store_dir, fresh_embedder)
    records = await reloaded.get_all()

    assert [record.id for record in records] == [acme.id]
    assert fresh_embedder.calls == []


@pytest.mark.asyncio
async def test_get_all_falls_back_to_docstore_file(
    store: OrganizationStore, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    await store.add(_acme())
    await store.add(_orbit())

    def broken():
        raise RuntimeError("index unavailable")

    monkeypatch.setattr(store, "_list_indexed", broken)
    with caplog.at_level(logging.WARNING, logger="infrasim.storage"):
        records = await store.get_all()

    assert sorted(record.name for record in records) == ["Acme Bank", "Orbit Freight"]
    assert "index unavailable" in caplog.text


@pytest.mark.asyncio
async def test_backup_path_warns_on_unknown_layout(
    store: OrganizationStore, store_dir: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    await store.initialize()
    (store_dir / DOCSTORE_FILENAME).write_text(json.dumps({"docs": {}}), encoding="utf-8")

    def broken():
        raise RuntimeError("index unavailable")

    monkeypatch.setattr(store, "_list_indexed", broken)
    with caplog.at_level(logging.WARNING, logger="infrasim.storage"):
        records = await store.get_all()

    assert records == []
    assert "Unexpected docstore layout" in caplog.text


@pytest.mark.asyncio
async def test_dimension_change_rebuilds_index(store: OrganizationStore, store_dir: Path, embedder) -> None:
    await store.add(_acme())
    embedder.dimension = 32

    assert await store.search("bank") == []
    assert await store.search("bank") == []
    assert await store.get_all() == []
    assert np.load(store_dir / INDEX_FILENAME).shape == (1, 32)

    await store.add(_orbit())
    assert [hit.record.name for hit in await store.search("shipping")] == ["Orbit Freight"]


@pytest.mark.asyncio
async def test_unreadable_files_trigger_fresh_bootstrap(store_dir: Path, embedder) -> None:
    store_dir.mkdir(parents=True)
    (store_dir / INDEX_FILENAME).write_bytes(b"not a numpy file")
    (store_dir / DOCSTORE_FILENAME).write_text("{broken", encoding="utf-8")

    store = OrganizationStore(store_dir, embedder)
    await store.initialize()

    assert await store.get_all() == []
    assert json.loads((store_dir / DOCSTORE_FILENAME).read_text(encoding="utf-8"))[1] == {"0": SENTINEL_ID}


@pytest.mark.asyncio
async def test_component_helpers_keep_graph_consistent(store: OrganizationStore) -> None:
    acme = _acme()
    await store.add(acme)
    web = await store.add_component(acme.id, {"type": "web_app", "name": "Portal"})
    db = await store.add_component(
        acme.id,
        InfrastructureComponent.model_validate({"type": "database", "name": "CoreDB", "connections": [web.id]}),
    )

    await store.link_components(acme.id, web.id, db.id)
    components = await store.get_components(acme.id)
    assert [c.connections for c in components] == [[db.id], [web.id]]

    updated = await store.update_component(acme.id, db.id, {"ip": "10.0.0.5"})
    assert updated.ip == "10.0.0.5"
    assert updated.name == "CoreDB"

    layout = await store.describe_layout(acme.id)
    assert layout.startswith("Acme Bank Infrastructure Layout:")
    assert "Total Components: 2" in layout

    await store.remove_component(acme.id, db.id)
    remaining = await store.get_components(acme.id)
    assert [c.name for c in remaining] == ["Portal"]
    assert remaining[0].connections == []

    with pytest.raises(ComponentNotFoundError):
        await store.add_component(acme.id, {"type": "firewall", "name": "Edge", "connections": ["ghost"]})
    with pytest.raises(ComponentNotFoundError):
        await store.remove_component(acme.id, "ghost")
    with pytest.raises(RecordNotFoundError):
        await store.get_components("missing")


@pytest.mark.asyncio
async def test_update_after_dimension_change_leaves_consistent_state(
    store: OrganizationStore, store_dir: Path, embedder
) -> None:
    acme = _acme()
    await store.add(acme)
    changed = (await store.get(acme.id)).model_copy(update={"description": "Private banking"})
    embedder.dimension = 32

    with pytest.raises(IndexShapeError):
        await store.update(changed)

    assert await store.get_all() == []
    assert np.load(store_dir / INDEX_FILENAME).shape == (1, 32)
    assert await store.add(acme) == acme.id
    assert [record.id for record in await store.get_all()] == [acme.id]
    raw = json.loads((store_dir / DOCSTORE_FILENAME).read_text(encoding="utf-8"))
    assert raw[1] == {"0": SENTINEL_ID, "1": acme.id}


@pytest.mark.asyncio
async def test_partial_component_gets_add_defaults(store: OrganizationStore) -> None:
    acme = _acme()
    await store.add(acme)

    added = await store.add_component(
        acme.id, {"kind": "database", "name": "Core DB"}, layout_instructions="right bottom"
    )

    assert added.hostname == "coredb.local"
    assert added.ip.startswith("192.168.")
    assert 500 <= added.position.x <= 700
    assert 400 <= added.position.y <= 550
    assert (await store.get_components(acme.id))[0].id == added.id


@pytest.mark.asyncio
async def test_components_can_be_referenced_by_name(store: OrganizationStore) -> None:
    acme = _acme()
    await store.add(acme)
    db = await store.add_component(acme.id, {"type": "database", "name": "CoreDB", "ip": "192.168.0.10"})
    web = await store.add_component(acme.id, {"type": "web_app", "name": "Portal", "connections": [db.id]})

    updated = await store.update_component(acme.id, "coredb", {"name": "Renamed", "ip": "10.0.0.5"})

    assert updated.id == db.id
    assert updated.ip == "10.0.0.5"
    assert updated.name == "CoreDB"

    removed = await store.remove_component(acme.id, "CoreDB")
    assert removed.id == db.id
    remaining = await store.get_components(acme.id)
    assert [c.id for c in remaining] == [web.id]
    assert remaining[0].connections == []
