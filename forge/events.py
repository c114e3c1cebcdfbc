"""
WebSocket event feed. Clients send {"type": "generate", ...} and get the turn
back as it happens: `turn` snapshots, `file`, `log`, then `done` or `error`.
"""
import asyncio, json, logging

import websockets

from forge.config import Settings
from forge.errors import ForgeError
from forge.llm import ChatClient
from forge.pipeline import run_turn
from forge.preview import render_frame
from forge.store import ProjectLocks, validate_project_id

log = logging.getLogger("events")


class EventFeed:
    def __init__(self, settings: Settings, client: ChatClient, locks: ProjectLocks):
        self.settings = settings
        self.client   = client
        self.locks    = locks
        self.clients  = set()
        self._tasks   = set()

    # ── Broadcast helpers ─────────────────────────────────────────────────────

    async def emit(self, msg: dict):
        data = json.dumps(msg, ensure_ascii=False)
        dead = set()
        for ws in list(self.clients):
            try:
                await ws.send(data)
            except websockets.exceptions.ConnectionClosed:
                dead.add(ws)
        self.clients.difference_update(dead)

    async def elog(self, lvl, txt):  await self.emit({"type": "log",   "level": lvl, "text": txt})
    async def eerr(self, txt):       await self.emit({"type": "error", "text": txt})

    async def edone(self, result):
        await self.emit({"type": "done", **result.to_dict(),
                         "frame": render_frame(result.preview, title=result.project_id)})

    # ── Generation ────────────────────────────────────────────────────────────

    async def generate(self, msg: dict):
        prompt = (msg.get("prompt") or "").strip()
        if not prompt:
            await self.eerr("Prompt is required")
            return
        if not self.client.configured:
            await self.eerr("API key not configured")
            return
        try:
            project_id = msg.get("projectId")
            if project_id:
                validate_project_id(project_id)
            await self.elog("INFO", f"🚀 Generating: {prompt[:80]}")
            result = await run_turn(
                self.client, self.settings, self.locks, prompt,
                history=msg.get("conversationHistory") or [],
                is_first_request=msg.get("isFirstRequest", True),
                project_id=project_id, on_event=self.emit)
            if result.fix:
                await self.elog("INFO", f"   🔧 {len(result.fix.fixes)} fix(es) applied to {result.project_id}")
            await self.edone(result)
        except ForgeError as e:
            log.warning(f"   ❌ generation failed: {e}")
            await self.eerr(str(e))
        except Exception as e:
            log.exception("generation crashed")
            await self.eerr(f"Generation failed: {e}")

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handler(self, websocket, path=None):
        self.clients.add(websocket)
        log.info(f"WS connected ({len(self.clients)})")
        try:
            await websocket.send(json.dumps({
                "type": "log", "level": "INFO",
                "text": "✅ PromptForge connected — send a prompt to generate",
            }))
            async for raw in websocket:
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict) and msg.get("type") == "generate":
                    self._spawn(self.generate(msg))
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)
            log.info(f"WS disconnected ({len(self.clients)})")
