import json

import httpx
import pytest

from forge.config import Settings


def sse_body(chunks):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}\n\n" for c in chunks]
    return ("".join(lines) + "data: [DONE]\n\n").encode()


def sse_transport(chunks, calls=None):
    def handler(request: httpx.Request):
        if calls is not None:
            calls.append(json.loads(request.content))
        return httpx.Response(200, content=sse_body(chunks),
                              headers={"content-type": "text/event-stream"})
    return httpx.MockTransport(handler)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_key="test-key",
        projects_dir=tmp_path / "previews",
        port_mapping_file=tmp_path / "port-mapping.json",
        auto_start_preview=False,
        min_request_interval=0.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def write(tmp_path):
    def _write(rel, content, root=None):
        fp = (root or tmp_path) / rel
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(content, encoding="utf-8")
        return fp
    return _write
