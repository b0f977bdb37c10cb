"""
test_results_service.py

Inbox de lotes JSON: archive/ si el lote entra, error/ si se rechaza,
inbox/ intacto si el store no está listo.
"""
import json
from pathlib import Path

import pytest

from labsync.helpers.notifier import NotificationBus
from labsync.services.ingestion_service import IngestionOrchestrator
from labsync.services.results_service import ResultsService
from labsync.storage.database import Database


def make_service(tmp_path, ready=True):
    paths = {k: str(tmp_path / k) for k in ("inbox", "archive", "error")}
    (tmp_path / "inbox").mkdir()
    db = Database(f"sqlite:///{tmp_path / 'lab.db'}", create_schema=ready)
    db.initialize()
    return ResultsService(IngestionOrchestrator(db, notifier=NotificationBus()), paths), paths


def drop(paths, name, content):
    p = tmp_path_of(paths, "inbox") / name
    p.write_text(content if isinstance(content, str) else json.dumps(content), encoding="utf-8")
    return p


def tmp_path_of(paths, key) -> Path:
    return Path(paths[key])


GOOD = {
    "analyzerId": "A1",
    "patientData": {"id": "P1", "name": "John Doe"},
    "testResults": [{"testId": "GLU", "sampleId": "S1", "value": "95", "referenceRange": "70-100"}],
}
BAD = {
    "analyzerId": "A1",
    "patientData": {"id": "P1", "name": "John Doe"},
    "testResults": [{"testId": "GLU", "sampleId": "S1", "value": ""}],
}


@pytest.mark.asyncio
async def test_backlog_routes_files(tmp_path):
    svc, paths = make_service(tmp_path)
    drop(paths, "001.json", GOOD)
    drop(paths, "002.json", BAD)
    drop(paths, "003.json", "{no es json")
    drop(paths, "notes.txt", "ignorado")

    assert await svc.process_backlog("*.json") == 3

    assert sorted(p.name for p in tmp_path_of(paths, "archive").iterdir()) == ["001.json"]
    assert sorted(p.name for p in tmp_path_of(paths, "error").iterdir()) == ["002.json", "003.json"]
    assert [p.name for p in tmp_path_of(paths, "inbox").iterdir()] == ["notes.txt"]


@pytest.mark.asyncio
async def test_empty_backlog(tmp_path):
    svc, _ = make_service(tmp_path)
    assert await svc.process_backlog("*.json") == 0


@pytest.mark.asyncio
async def test_not_ready_store_keeps_file_in_inbox(tmp_path):
    svc, paths = make_service(tmp_path, ready=False)
    src = drop(paths, "001.json", GOOD)

    outcome = await svc.process_file(str(src))

    assert outcome.not_ready
    assert src.exists()
    assert list(tmp_path_of(paths, "archive").iterdir()) == []
    assert list(tmp_path_of(paths, "error").iterdir()) == []


@pytest.mark.asyncio
async def test_text_without_source_file_is_written_to_archive(tmp_path):
    svc, paths = make_service(tmp_path)
    outcome = await svc.process_text(json.dumps(GOOD))
    assert outcome.success and outcome.count == 1
    assert (tmp_path_of(paths, "archive") / "batch.json").exists()


@pytest.mark.asyncio
async def test_invalid_json_returns_none(tmp_path):
    svc, paths = make_service(tmp_path)
    src = drop(paths, "bad.json", "[1, 2")
    assert await svc.process_file(str(src)) is None
    assert (tmp_path_of(paths, "error") / "bad.json").exists()


@pytest.mark.asyncio
async def test_redelivered_file_does_not_overwrite_archive(tmp_path):
    svc, paths = make_service(tmp_path)
    drop(paths, "001.json", GOOD)
    await svc.process_backlog("*.json")
    second = dict(GOOD, testResults=[{"testId": "HGB", "sampleId": "S2", "value": "13.1"}])
    drop(paths, "001.json", second)
    await svc.process_backlog("*.json")

    archived = sorted(tmp_path_of(paths, "archive").iterdir())
    assert len(archived) == 2
    assert (tmp_path_of(paths, "archive") / "001.json").read_text(encoding="utf-8") == json.dumps(GOOD)
    assert all(p.suffix == ".json" for p in archived)
    assert any(p.name.startswith("001.") and p.name != "001.json" for p in archived)


@pytest.mark.asyncio
async def test_repeated_rejections_are_all_kept(tmp_path):
    svc, paths = make_service(tmp_path)
    for _ in range(2):
        await svc.process_text("{roto")
    assert len(list(tmp_path_of(paths, "error").iterdir())) == 2
