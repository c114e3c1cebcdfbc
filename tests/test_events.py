import asyncio, json

from forge.events import EventFeed
from forge.llm import ChatClient
from forge.store import ProjectLocks

from conftest import sse_transport

CHUNKS = [
    "Counter app.\n/// file: package.json\n{\"name\": \"c\"}\n/// endfile\n/// file: src/App.tsx\n",
    "export default function App() { return null }\n/// endfile\n",
    "/// file: preview.html\n<div>0</div>\n/// endfile\n",
]


class FakeSocket:
    def __init__(self, incoming=()):
        self.sent = []
        self._incoming = list(incoming)

    async def send(self, data):
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._incoming:
            raise StopAsyncIteration
        return self._incoming.pop(0)


def _feed(settings, chunks=CHUNKS):
    return EventFeed(settings, ChatClient(settings, transport=sse_transport(chunks)), ProjectLocks())


def test_generate_streams_turns_files_and_done(settings):
    feed = _feed(settings)
    ws = FakeSocket()
    feed.clients.add(ws)
    asyncio.run(feed.generate({"type": "generate", "prompt": "counter", "projectId": "p1"}))

    types = [m["type"] for m in ws.sent]
    assert types[0] == "log"
    assert "turn" in types
    assert types[-1] == "done"
    assert [m["name"] for m in ws.sent if m["type"] == "file"] == ["package.json", "src/App.tsx"]

    done = ws.sent[-1]
    assert done["projectId"] == "p1"
    assert done["previewKind"] == "fragment"
    assert "sandbox=" in done["frame"]
    assert done["validation"]["success"] is True
    assert (settings.projects_dir / "p1" / "preview.html").exists()
    assert (settings.projects_dir / "p1" / "vite.config.ts").exists()


def test_first_snapshot_never_shows_partial_file(settings):
    feed = _feed(settings)
    ws = FakeSocket()
    feed.clients.add(ws)
    asyncio.run(feed.generate({"prompt": "counter"}))
    first_turn = next(m for m in ws.sent if m["type"] == "turn")
    assert first_turn["pending"] == "src/App.tsx"
    assert "export default" not in first_turn["code"]


def test_missing_prompt_is_an_error_event(settings):
    feed = _feed(settings)
    ws = FakeSocket()
    feed.clients.add(ws)
    asyncio.run(feed.generate({"prompt": ""}))
    assert ws.sent == [{"type": "error", "text": "Prompt is required"}]


def test_bad_project_id_is_an_error_event(settings):
    feed = _feed(settings)
    ws = FakeSocket()
    feed.clients.add(ws)
    asyncio.run(feed.generate({"prompt": "x", "projectId": "../x"}))
    assert ws.sent[-1]["type"] == "error"


def test_handler_greets_and_forgets_client(settings):
    feed = _feed(settings)
    ws = FakeSocket(incoming=["not json", json.dumps({"type": "ping"})])
    asyncio.run(feed.handler(ws))
    assert ws.sent[0]["type"] == "log"
    assert ws not in feed.clients
