import httpx
import pytest
from fastapi.testclient import TestClient

from forge.llm import ChatClient
from server import create_app

from conftest import sse_transport

RESPONSE = (
    "A counter app.\n"
    "/// file: package.json\n{\"name\": \"counter\"}\n/// endfile\n"
    "/// file: src/App.tsx\nexport default function App() { return <button>0</button> }\n/// endfile\n"
    "/// file: preview.html\n<!DOCTYPE html><html><body><button>0</button></body></html>\n/// endfile\n"
)


def _client(settings, transport):
    return TestClient(create_app(settings, client=ChatClient(settings, transport=transport)))


@pytest.fixture
def api(settings):
    with _client(settings, sse_transport(["Hello ", "world"])) as c:
        yield c


def _save(api, project_id="p1", files=None):
    files = files if files is not None else [
        {"path": "package.json", "content": '{"name": "counter"}\n'},
        {"path": "src/App.tsx", "content": "import Nav from '../components/Nav'\n"},
        {"path": "preview.html", "content": "<p>preview</p>\n"},
    ]
    return api.post("/api/save-project", json={"projectId": project_id, "files": files})


def test_stream_relays_chunks(api):
    resp = api.post("/api/generate/stream", json={"prompt": "make a counter"})
    assert resp.status_code == 200
    assert resp.text == "Hello world"
    assert resp.headers["content-type"].startswith("text/plain")


def test_stream_requires_prompt(api):
    resp = api.post("/api/generate/stream", json={"prompt": "   "})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Prompt is required"}


def test_stream_without_api_key(settings):
    settings.api_key = ""
    with _client(settings, sse_transport([])) as c:
        resp = c.post("/api/generate/stream", json={"prompt": "x"})
    assert resp.status_code == 500


def test_stream_reports_upstream_failure_in_band(settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(400, text="bad model"))
    with _client(settings, transport) as c:
        resp = c.post("/api/generate/stream", json={"prompt": "x"})
    assert resp.status_code == 200
    assert "Error: Upstream returned 400" in resp.text


def test_generate_returns_segments(settings):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"choices": [{"message": {"content": RESPONSE}}]}))
    with _client(settings, transport) as c:
        body = c.post("/api/generate", json={"prompt": "counter"}).json()
    assert body["preview"].startswith("<!DOCTYPE html>")
    assert [f["path"] for f in body["files"]] == ["package.json", "src/App.tsx"]
    assert "/// file: src/App.tsx" in body["code"]
    assert body["description"] == "A counter app."


def test_malformed_body_is_400(api):
    resp = api.post("/api/generate", content=b"not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400


def test_save_project_writes_and_fixes(api, settings):
    resp = _save(api)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["savedFiles"] == 4
    assert body["livePreview"] is None
    assert "npm install && npm run dev" in body["instructions"]

    proj = settings.projects_dir / "p1"
    assert (proj / "README.md").exists()
    assert (proj / "preview.html").exists()
    # background fixer ran after the response
    assert (proj / "vite.config.ts").exists()
    assert "@/components/Nav" in (proj / "src/App.tsx").read_text()


def test_save_project_rejects_bad_input(api):
    assert api.post("/api/save-project", json={"projectId": "p1"}).status_code == 400
    assert _save(api, project_id="../evil").status_code == 400


def test_validate_project(api):
    _save(api)
    body = api.post("/api/validate-project", json={"projectId": "p1"}).json()
    validation = body["validation"]
    assert body["success"] is True
    assert validation["isValid"] is True
    assert validation["fixes"] == []
    assert "Missing essential file: index.html" in validation["warnings"]


def test_validate_missing_project(api):
    assert api.post("/api/validate-project", json={"projectId": "nope"}).status_code == 404


def test_fix_markdown(api, settings):
    _save(api, files=[{"path": "tsconfig.json", "content": "```json\n{}\n```\n"}])
    body = api.post("/api/fix-markdown", json={"projectId": "p1"}).json()
    assert body["success"] is True
    assert body["message"].startswith("Fixed ")


def test_node_preview_actions(api):
    assert api.post("/api/node-preview", json={"action": "explode", "projectId": "p1"}).status_code == 400
    assert api.post("/api/node-preview", json={"action": "stop", "projectId": "p1"}).status_code == 404
    status = api.post("/api/node-preview", json={"action": "status", "projectId": "p1"}).json()
    assert status["running"] is False
    assert api.post("/api/node-preview", json={"action": "start", "projectId": "missing"}).status_code == 404


def test_queue_status_when_idle(api):
    assert api.get("/api/queue-status").json() == {
        "queueLength": 0,
        "isProcessing": False,
        "estimatedWaitTime": 0,
        "estimatedWaitTimeFormatted": "0s",
        "status": "ready",
    }


def test_project_preview_page(api):
    _save(api)
    resp = api.get("/api/projects/p1/preview")
    assert resp.status_code == 200
    assert "<iframe" in resp.text
    assert "&lt;p&gt;preview&lt;/p&gt;" in resp.text
    assert api.get("/api/projects/nope/preview").status_code == 404
