import asyncio, json

import pytest

from forge.devserver import (ANSI_RE, VITE_READY_RE, DevServerManager, PortMappingStore,
                             PreviewProcess, ProcessRegistry)
from forge.errors import ProjectNotFound


def _probe(result):
    seen = []

    async def probe(port):
        seen.append(port)
        return result
    probe.seen = seen
    return probe


@pytest.fixture
def mapping(tmp_path):
    return PortMappingStore(tmp_path / ".port-mapping.json")


def _manager(tmp_path, mapping, **kw):
    return DevServerManager(tmp_path / "previews", mapping, **kw)


def test_registry_get_set_remove():
    reg = ProcessRegistry()
    entry = PreviewProcess(port=3002)
    reg.set("p1", entry)
    assert reg.get("p1") is entry
    assert "p1" in reg and len(reg) == 1
    assert reg.ports() == {3002}
    assert reg.remove("p1") is entry
    assert reg.get("p1") is None
    assert reg.remove("p1") is None


def test_mapping_round_trip(mapping):
    assert mapping.load() == {}
    mapping.set("p1", 3002)
    mapping.set("p2", 3003)
    assert mapping.get("p1") == 3002
    mapping.remove("p1")
    assert json.loads(mapping.path.read_text()) == {"p2": 3003}


def test_corrupt_mapping_reads_as_empty(mapping):
    mapping.path.write_text("{broken")
    assert mapping.load() == {}


def test_status_of_tracked_process(tmp_path, mapping):
    mgr = _manager(tmp_path, mapping)
    mgr.registry.set("p1", PreviewProcess(port=3005, status="running"))
    status = asyncio.run(mgr.status("p1"))
    assert status["running"] is True
    assert status["previewUrl"] == "http://localhost:3005"
    assert status["source"] == "tracked-process"


def test_starting_process_has_no_url_yet(tmp_path, mapping):
    mgr = _manager(tmp_path, mapping)
    mgr.registry.set("p1", PreviewProcess(port=3005))
    status = asyncio.run(mgr.status("p1"))
    assert status["status"] == "starting"
    assert status["running"] is False
    assert status["previewUrl"] is None


def test_status_falls_back_to_live_mapping(tmp_path, mapping):
    mapping.set("p1", 3007)
    probe = _probe(True)
    status = asyncio.run(_manager(tmp_path, mapping, probe=probe).status("p1"))
    assert probe.seen == [3007]
    assert status == {"projectId": "p1", "port": 3007, "status": "running", "running": True,
                      "previewUrl": "http://localhost:3007", "source": "persistent-mapping"}


def test_stale_mapping_is_dropped(tmp_path, mapping):
    mapping.set("p1", 3007)
    status = asyncio.run(_manager(tmp_path, mapping, probe=_probe(False)).status("p1"))
    assert status == {"projectId": "p1", "status": "stopped", "running": False}
    assert mapping.get("p1") is None


def test_start_requires_manifest(tmp_path, mapping):
    (tmp_path / "previews/p1").mkdir(parents=True)
    with pytest.raises(ProjectNotFound):
        asyncio.run(_manager(tmp_path, mapping).start("p1"))


def test_spawn_failure_clears_registry(tmp_path, mapping, write):
    write("previews/p1/package.json", "{}")
    mapping.set("other", 3002)
    prepared = []

    async def prepare(project_id):
        prepared.append(project_id)

    mgr = _manager(tmp_path, mapping, npm=str(tmp_path / "no-such-npm"), prepare=prepare)

    async def scenario():
        started = await mgr.start("p1")
        entry = mgr.registry.get("p1")
        await entry.task
        return started, entry

    started, entry = asyncio.run(scenario())
    assert started["status"] == "starting"
    assert started["port"] == 3003
    assert prepared == ["p1"]
    assert entry.status == "failed"
    assert mgr.registry.get("p1") is None


def test_prepare_crash_marks_preview_failed(tmp_path, mapping, write):
    write("previews/p1/package.json", "{}")

    async def prepare(project_id):
        raise ValueError("broken manifest")

    mgr = _manager(tmp_path, mapping, prepare=prepare)

    async def scenario():
        await mgr.start("p1")
        entry = mgr.registry.get("p1")
        await entry.task
        return entry

    entry = asyncio.run(scenario())
    assert entry.status == "failed"
    assert mgr.registry.get("p1") is None


def test_stop_when_nothing_running(tmp_path, mapping):
    assert asyncio.run(_manager(tmp_path, mapping).stop("p1")) is False


def test_stop_clears_registry_and_mapping(tmp_path, mapping):
    mgr = _manager(tmp_path, mapping)
    mgr.registry.set("p1", PreviewProcess(port=3002, status="running"))
    mapping.set("p1", 3002)
    assert asyncio.run(mgr.stop("p1")) is True
    assert mgr.registry.get("p1") is None
    assert mapping.get("p1") is None


def test_vite_banner_port():
    line = ANSI_RE.sub("", "  \x1b[32m➜\x1b[39m  \x1b[1mLocal\x1b[22m:   http://localhost:\x1b[1m5174\x1b[22m/")
    assert VITE_READY_RE.search(line).group(1) == "5174"
