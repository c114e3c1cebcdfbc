"""
One generation turn end to end: stream → segment → extract → save → fix → preview.

Both the HTTP API and the WebSocket feed run turns through here; the only
difference is what they do with the events handed to `on_event`.
"""
import asyncio, logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from forge.config import Settings
from forge.extractor import extract_files, extract_preview
from forge.fixer import fix_project
from forge.llm import ChatClient
from forge.models import FileRecord, FixResult, ParsedTurn, ResponseBuffer, PREVIEW_FILE
from forge.preview import PreviewDocument, compose_preview
from forge.store import (ProjectLocks, generate_project_id, project_path, save_files,
                         strip_markdown_artifacts, write_readme)

log = logging.getLogger("pipeline")

EventSink = Callable[[dict], Awaitable[None]]


@dataclass
class TurnResult:
    project_id: str
    parsed:     ParsedTurn
    files:      list
    preview:    PreviewDocument
    saved:      list = field(default_factory=list)
    fix:        Optional[FixResult] = None

    def to_dict(self) -> dict:
        return {
            "projectId":   self.project_id,
            **{k: v for k, v in self.parsed.to_dict().items() if k != "pending"},
            "files":       [{"path": f.path, "content": f.content} for f in self.files],
            "savedFiles":  self.saved,
            "previewKind": self.preview.kind,
            "validation":  self.fix.to_dict() if self.fix else None,
        }


# ── Save / fix ────────────────────────────────────────────────────────────────

def persist_project(projects_dir: Path, project_id: str, files: list) -> tuple:
    """Write files + README, then scrub markdown leftovers. Blocking."""
    proj = project_path(projects_dir, project_id)
    saved = save_files(proj, files)
    write_readme(proj, project_id, saved)
    cleaned = strip_markdown_artifacts(proj)
    return proj, saved, cleaned


async def save_project(settings: Settings, locks: ProjectLocks, project_id: str, files: list) -> tuple:
    async with locks(project_id):
        return await asyncio.to_thread(persist_project, settings.projects_dir, project_id, files)


async def fix_saved_project(settings: Settings, locks: ProjectLocks, project_id: str) -> FixResult:
    proj = project_path(settings.projects_dir, project_id)
    async with locks(project_id):
        result = await asyncio.to_thread(fix_project, proj, project_id, settings.use_tailwind)
    if result.errors:
        log.warning(f"   ⚠ {project_id}: {len(result.errors)} fixer error(s) remain")
    return result


# ── Turn ──────────────────────────────────────────────────────────────────────

async def _noop(_event: dict):
    return None


async def run_turn(client: ChatClient, settings: Settings, locks: ProjectLocks, prompt: str, *,
                   history: list = (), is_first_request: bool = True,
                   project_id: Optional[str] = None, save: bool = True,
                   on_event: EventSink = _noop) -> TurnResult:
    buf = ResponseBuffer(is_first_request)
    last = None
    async for chunk in client.stream(prompt, history, is_first_request):
        buf.append(chunk)
        parsed = buf.parse()
        if parsed != last:
            await on_event({"type": "turn", **parsed.to_dict()})
            last = parsed

    parsed  = buf.parse(complete=True)
    files   = extract_files(buf.text)
    payload = extract_preview(buf.text) or parsed.preview_html
    preview = compose_preview(payload)
    log.info(f"   📄 turn complete: {len(buf)} chars, {len(files)} file(s), preview={preview.kind}")

    result = TurnResult(project_id=project_id or generate_project_id(),
                        parsed=parsed, files=files, preview=preview)
    if save and files:
        to_save = files + ([FileRecord(PREVIEW_FILE, payload + "\n")] if payload else [])
        _, result.saved, _ = await save_project(settings, locks, result.project_id, to_save)
        for f in files:
            await on_event({"type": "file", "name": f.path, "size": len(f.content), "content": f.content})
        result.fix = await fix_saved_project(settings, locks, result.project_id)
    return result
