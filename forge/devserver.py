"""
Live preview: one `npm run dev` process per saved project.

Ports are handed out from first_port upwards. Every port a dev server ends up
on is written to the .port-mapping.json sidecar so a restarted backend can
still find previews that outlived it.
"""
import asyncio, json, logging, os, re, shutil, time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx

from forge.errors import ProjectNotFound
from forge.store import project_path

log = logging.getLogger("devserver")

NPM_BIN = shutil.which("npm") or "npm"

ANSI_RE       = re.compile(r"\x1b\[[0-9;]*m")
VITE_READY_RE = re.compile(r"Local:\s+https?://(?:localhost|127\.0\.0\.1):(\d+)")
INSTALL_TIMEOUT = 300
STOP_GRACE      = 5.0


def preview_url(port: int) -> str:
    return f"http://localhost:{port}"


async def probe_port(port: int, timeout: float = 2.0) -> bool:
    """HEAD the dev server; anything but a 2xx counts as dead."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.head(preview_url(port))
        return resp.is_success
    except httpx.HTTPError:
        return False


@dataclass
class PreviewProcess:
    port:       int
    status:     str = "starting"       # starting | running | failed
    process:    Optional[asyncio.subprocess.Process] = None
    task:       Optional[asyncio.Task] = None
    created_at: float = field(default_factory=time.time)


class ProcessRegistry:
    def __init__(self):
        self._procs = {}

    def get(self, project_id: str) -> Optional[PreviewProcess]:
        return self._procs.get(project_id)

    def set(self, project_id: str, entry: PreviewProcess):
        self._procs[project_id] = entry

    def remove(self, project_id: str) -> Optional[PreviewProcess]:
        return self._procs.pop(project_id, None)

    def ports(self) -> set:
        return {e.port for e in self._procs.values()}

    def ids(self) -> list:
        return list(self._procs)

    def __contains__(self, project_id) -> bool:
        return project_id in self._procs

    def __len__(self) -> int:
        return len(self._procs)


class PortMappingStore:
    """project id → port, persisted as JSON. Read/write failures are logged, never raised."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            log.warning(f"   ⚠ port mapping unreadable ({self.path.name}): {e}")
            return {}
        return {k: int(v) for k, v in data.items() if isinstance(v, (int, str)) and str(v).isdigit()}

    def save(self, mapping: dict):
        try:
            self.path.write_text(json.dumps(mapping, indent=2), encoding="utf-8")
        except OSError as e:
            log.error(f"   ❌ failed to save port mapping: {e}")

    def get(self, project_id: str) -> Optional[int]:
        return self.load().get(project_id)

    def set(self, project_id: str, port: int):
        mapping = self.load()
        mapping[project_id] = port
        self.save(mapping)

    def remove(self, project_id: str):
        mapping = self.load()
        if mapping.pop(project_id, None) is not None:
            self.save(mapping)


class DevServerManager:
    def __init__(self, projects_dir: Path, mapping: PortMappingStore,
                 registry: Optional[ProcessRegistry] = None, first_port: int = 3002,
                 npm: str = NPM_BIN, probe: Callable[[int], Awaitable[bool]] = probe_port,
                 prepare: Optional[Callable[[str], Awaitable]] = None):
        self.projects_dir = Path(projects_dir)
        self.mapping      = mapping
        self.registry     = registry or ProcessRegistry()
        self.npm          = npm
        self.probe        = probe
        self.prepare      = prepare      # awaited before npm install
        self._next_port   = first_port

    def _allocate_port(self) -> int:
        taken = self.registry.ports() | set(self.mapping.load().values())
        port = self._next_port
        while port in taken:
            port += 1
        self._next_port = port + 1
        return port

    def _describe(self, project_id: str, entry: PreviewProcess, **extra) -> dict:
        running = entry.status == "running"
        return {
            "projectId":  project_id,
            "port":       entry.port,
            "status":     entry.status,
            "running":    running,
            "previewUrl": preview_url(entry.port) if running else None,
            "createdAt":  int(entry.created_at * 1000),
            **extra,
        }

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self, project_id: str) -> dict:
        entry = self.registry.get(project_id)
        if entry:
            return {"success": True, "projectId": project_id, "port": entry.port,
                    "status": entry.status, "previewUrl": preview_url(entry.port),
                    "message": "Project already running"}

        proj_dir = project_path(self.projects_dir, project_id)
        if not (proj_dir / "package.json").exists():
            raise ProjectNotFound("Project not found or missing package.json")

        port  = self._allocate_port()
        entry = PreviewProcess(port=port)
        self.registry.set(project_id, entry)
        log.info(f"🚀 starting preview for {project_id} on port {port}…")
        entry.task = asyncio.create_task(self._run(project_id, proj_dir, entry))
        return {"success": True, "projectId": project_id, "port": port, "status": "starting",
                "previewUrl": preview_url(port),
                "message": f"Project starting on port {port} (installing dependencies...)"}

    async def _run(self, project_id: str, proj_dir: Path, entry: PreviewProcess):
        try:
            if self.prepare is not None:
                await self.prepare(project_id)
            install = await asyncio.create_subprocess_exec(
                self.npm, "install", cwd=proj_dir,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT)
            entry.process = install
            try:
                out, _ = await asyncio.wait_for(install.communicate(), timeout=INSTALL_TIMEOUT)
            except asyncio.TimeoutError:
                install.kill()
                raise
            if install.returncode != 0:
                tail = out.decode("utf-8", "replace")[-300:] if out else ""
                log.error(f"   ❌ npm install failed for {project_id} (code {install.returncode})\n{tail}")
                entry.status = "failed"
                return
            log.info(f"   📦 dependencies installed for {project_id}, starting dev server…")

            proc = await asyncio.create_subprocess_exec(
                self.npm, "run", "dev", "--", "--port", str(entry.port), cwd=proj_dir,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, "PORT": str(entry.port)})
            entry.process = proc
            entry.status  = "running"
            self.mapping.set(project_id, entry.port)

            async for raw in proc.stdout:
                line = ANSI_RE.sub("", raw.decode("utf-8", "replace")).strip()
                if not line:
                    continue
                log.info(f"   [{project_id}] {line}")
                m = VITE_READY_RE.search(line)
                if m and int(m.group(1)) != entry.port:
                    actual = int(m.group(1))
                    log.warning(f"   ⚠ {project_id} came up on {actual}, expected {entry.port}")
                    entry.port = actual
                    self.mapping.set(project_id, actual)

            code = await proc.wait()
            log.info(f"   dev server for {project_id} exited with code {code}")
        except (OSError, asyncio.TimeoutError) as e:
            entry.status = "failed"
            log.error(f"   ❌ preview process failed for {project_id}: {e}")
        except Exception:
            entry.status = "failed"
            log.exception(f"   ❌ preview setup crashed for {project_id}")
        finally:
            if self.registry.get(project_id) is entry:
                self.registry.remove(project_id)

    async def stop(self, project_id: str) -> bool:
        """Terminate a tracked preview. False when nothing was running."""
        entry = self.registry.remove(project_id)
        if entry is None:
            return False
        proc = entry.process
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=STOP_GRACE)
            except asyncio.TimeoutError:
                proc.kill()
            except ProcessLookupError:
                pass
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
        self.mapping.remove(project_id)
        log.info(f"🛑 preview stopped for {project_id}")
        return True

    async def status(self, project_id: str) -> dict:
        entry = self.registry.get(project_id)
        if entry:
            return self._describe(project_id, entry, source="tracked-process")

        port = self.mapping.get(project_id)
        if port:
            if await self.probe(port):
                log.info(f"   found {project_id} on mapped port {port}")
                return {"projectId": project_id, "port": port, "status": "running", "running": True,
                        "previewUrl": preview_url(port), "source": "persistent-mapping"}
            self.mapping.remove(project_id)

        return {"projectId": project_id, "status": "stopped", "running": False}

    async def shutdown(self):
        for project_id in self.registry.ids():
            await self.stop(project_id)
