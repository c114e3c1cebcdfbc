#!/usr/bin/env python3
"""
PromptForge Server  —  HTTP :3000  |  WebSocket :3001
- Streams model output straight through to the caller
- Saves generated projects, repairs them, and runs a live Vite preview
- WebSocket feed mirrors each turn as parsed snapshots
"""
import asyncio, logging
from contextlib import asynccontextmanager
from functools import partial
from typing import List, Optional

import uvicorn
import websockets
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel

from forge.config import Settings
from forge.devserver import DevServerManager, PortMappingStore
from forge.errors import ForgeError, InvalidProjectId, ProjectNotFound
from forge.events import EventFeed
from forge.extractor import extract_files, extract_preview
from forge.fixer import find_missing_essentials
from forge.llm import ChatClient, format_wait_time, queue_status
from forge.models import FileRecord, PREVIEW_FILE
from forge.pipeline import fix_saved_project, save_project
from forge.preview import compose_preview, render_host_page
from forge.segmenter import segment
from forge.store import ProjectLocks, project_path, strip_markdown_artifacts

log = logging.getLogger("server")


# ── Request models ────────────────────────────────────────────────────────────

class GenerateRequest(BaseModel):
    prompt: Optional[str] = None
    conversationHistory: List[dict] = []
    isFirstRequest: bool = True


class FileIn(BaseModel):
    path: str
    content: str


class SaveProjectRequest(BaseModel):
    projectId: Optional[str] = None
    files: Optional[List[FileIn]] = None


class ProjectRequest(BaseModel):
    projectId: Optional[str] = None


class NodePreviewRequest(BaseModel):
    action: Optional[str] = None
    projectId: Optional[str] = None


def _error(message: str, status: int, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status)


# ── App ───────────────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, client: Optional[ChatClient] = None,
               devservers: Optional[DevServerManager] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    client   = client or ChatClient(settings)
    locks    = ProjectLocks()
    devservers = devservers or DevServerManager(
        settings.projects_dir, PortMappingStore(settings.port_mapping_file),
        first_port=settings.first_preview_port)
    if devservers.prepare is None:
        devservers.prepare = partial(fix_saved_project, settings, locks)
    settings.projects_dir.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await devservers.shutdown()

    app = FastAPI(title="PromptForge", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings   = settings
    app.state.client     = client
    app.state.locks      = locks
    app.state.devservers = devservers
    app.state.feed       = EventFeed(settings, client, locks)

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        return _error("Invalid request data", 400)

    @app.exception_handler(InvalidProjectId)
    async def _bad_project_id(request: Request, exc: InvalidProjectId):
        return _error(str(exc), 400)

    @app.exception_handler(ProjectNotFound)
    async def _not_found(request: Request, exc: ProjectNotFound):
        return _error(str(exc), 404)

    @app.exception_handler(ForgeError)
    async def _forge_error(request: Request, exc: ForgeError):
        log.error(f"❌ {request.url.path}: {exc}")
        return _error("Request failed", 500, details=str(exc))

    def _existing_project(project_id: Optional[str]):
        if not project_id:
            raise InvalidProjectId("Project ID required")
        proj = project_path(settings.projects_dir, project_id)
        if not proj.is_dir():
            raise ProjectNotFound("Project not found")
        return proj

    # ── Generation ────────────────────────────────────────────────────────────

    @app.post("/api/generate/stream")
    async def generate_stream(body: GenerateRequest, request: Request):
        prompt = (body.prompt or "").strip()
        if not prompt:
            return _error("Prompt is required", 400)
        if not client.configured:
            return _error("API key not configured", 500)

        async def relay():
            sent = 0
            try:
                async for chunk in client.stream(prompt, body.conversationHistory, body.isFirstRequest):
                    if await request.is_disconnected():
                        log.info("   client went away — closing upstream")
                        return
                    sent += len(chunk)
                    yield chunk
                log.info(f"   📤 streamed {sent} chars")
            except ForgeError as e:
                log.warning(f"   ❌ stream failed after {sent} chars: {e}")
                yield f"\n\nError: {e}"
            except Exception as e:
                log.exception("stream crashed")
                yield f"\n\nError: {e}"

        return StreamingResponse(relay(), media_type="text/plain; charset=utf-8",
                                 headers={"Cache-Control": "no-cache"})

    @app.post("/api/generate")
    async def generate(body: GenerateRequest):
        prompt = (body.prompt or "").strip()
        if not prompt:
            return _error("Prompt is required", 400)
        if not client.configured:
            return _error("API key not configured", 500)
        text   = await client.complete(prompt, body.conversationHistory, body.isFirstRequest)
        parsed = segment(text, complete=True, is_first_request=body.isFirstRequest)
        files  = extract_files(text)
        return {
            "preview":     extract_preview(text) or parsed.preview_html,
            "code":        parsed.code,
            "description": parsed.description,
            "files":       [{"path": f.path, "content": f.content} for f in files],
        }

    # ── Projects ──────────────────────────────────────────────────────────────

    @app.post("/api/save-project")
    async def save(body: SaveProjectRequest, background: BackgroundTasks):
        if not body.projectId or body.files is None:
            return _error("Invalid request data", 400)
        project_id = body.projectId
        files = [FileRecord(f.path, f.content) for f in body.files]
        proj, saved, cleaned = await save_project(settings, locks, project_id, files)
        log.info(f"💾 saved {project_id}: {len(saved)} file(s), {len(cleaned)} cleaned")
        background.add_task(fix_saved_project, settings, locks, project_id)

        live = None
        if settings.auto_start_preview and (proj / "package.json").exists():
            try:
                live = await devservers.start(project_id)
            except (ForgeError, OSError) as e:
                log.warning(f"   ⚠ auto preview failed for {project_id}: {e}")

        if live:
            instructions = f"Project saved to {proj}. Live preview: {live['previewUrl']}"
        else:
            instructions = f'Project saved to {proj}. Run with: cd "{proj}" && npm install && npm run dev'
        return {
            "success":     True,
            "projectId":   project_id,
            "savedFiles":  len(saved) + 1,
            "projectPath": str(proj),
            "livePreview": {k: live[k] for k in ("port", "previewUrl", "status")} if live else None,
            "instructions": instructions,
        }

    @app.post("/api/validate-project")
    async def validate(body: ProjectRequest):
        proj   = _existing_project(body.projectId)
        result = await fix_saved_project(settings, locks, body.projectId)
        warnings = [f"Missing essential file: {f}" for f in find_missing_essentials(proj)]
        return {
            "success":   True,
            "projectId": body.projectId,
            "validation": {
                "isValid":    not result.errors,
                "errors":     result.errors,
                "warnings":   warnings,
                "fixes":      result.fixes,
                "fixedFiles": result.fixed_files,
            },
        }

    @app.post("/api/fix-markdown")
    async def fix_markdown(body: ProjectRequest):
        proj = _existing_project(body.projectId)
        async with locks(body.projectId):
            fixed = await asyncio.to_thread(strip_markdown_artifacts, proj)
        return {"success": True, "projectId": body.projectId, "fixedFiles": fixed,
                "message": f"Fixed {len(fixed)} files"}

    @app.get("/api/projects/{project_id}/preview", response_class=HTMLResponse)
    async def project_preview(project_id: str):
        proj = _existing_project(project_id)
        fp = proj / PREVIEW_FILE
        payload = fp.read_text(encoding="utf-8") if fp.is_file() else ""
        return HTMLResponse(render_host_page(compose_preview(payload), title=project_id))

    # ── Live preview ──────────────────────────────────────────────────────────

    @app.post("/api/node-preview")
    async def node_preview(body: NodePreviewRequest):
        if not body.projectId:
            return _error("Project ID required", 400)
        project_path(settings.projects_dir, body.projectId)
        if body.action == "start":
            return await devservers.start(body.projectId)
        if body.action == "stop":
            if not await devservers.stop(body.projectId):
                return _error("Project not running", 404)
            return {"success": True, "message": "Preview stopped successfully"}
        if body.action == "status":
            return await devservers.status(body.projectId)
        return _error("Invalid action", 400)

    @app.get("/api/live-preview/{project_id}")
    async def live_preview(project_id: str):
        project_path(settings.projects_dir, project_id)
        status = await devservers.status(project_id)
        if status.get("running"):
            return {"status": "running", "port": status["port"], "previewUrl": status["previewUrl"],
                    "message": "Live preview available", "source": status.get("source")}
        started = await devservers.start(project_id)
        return {"status": "starting", "port": started["port"], "previewUrl": started["previewUrl"],
                "message": "Preview is starting...", "source": "node-preview"}

    # ── Queue ─────────────────────────────────────────────────────────────────

    @app.get("/api/queue-status")
    async def queue_info():
        info = client.queue.info()
        return {
            "queueLength":                info["queueLength"],
            "isProcessing":               info["isProcessing"],
            "estimatedWaitTime":          info["estimatedWaitTime"],
            "estimatedWaitTimeFormatted": format_wait_time(info["estimatedWaitTime"]),
            "status":                     queue_status(info["queueLength"], info["isProcessing"]),
        }

    return app


# ── Main ──────────────────────────────────────────────────────────────────────

async def main(settings: Optional[Settings] = None):
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(message)s")
    app  = create_app(settings)
    feed = app.state.feed
    server = uvicorn.Server(uvicorn.Config(app, host=settings.http_host, port=settings.http_port,
                                           log_level=settings.log_level.lower()))
    print(f"\n{'━'*46}")
    print(f"  ⚡ PromptForge Starting...")
    print(f"  ⚡ HTTP API    →  http://{settings.http_host}:{settings.http_port}")
    print(f"  🔌 WebSocket   →  ws://{settings.http_host}:{settings.ws_port}")
    print(f"  🧠 Model       :  {settings.model}")
    print(f"  📁 Projects    :  {settings.projects_dir}")
    if not settings.api_key:
        print(f"  ⚠  OPENROUTER_API_KEY not set — generation disabled")
    print(f"{'━'*46}\n")
    async with websockets.serve(feed.handler, settings.http_host, settings.ws_port):
        await server.serve()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n⛔ Stopped.")


if __name__ == "__main__":
    run()
