"""
Chat-completion client (OpenRouter-compatible) with retry and a request queue.

Every upstream call goes through RequestQueue (one call starts at a time,
minimum spacing between starts, bounded wait) and with_retry (exponential
backoff on 429 / 5xx / timeouts).
"""
import asyncio, json, logging, textwrap, time
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from forge.config import Settings
from forge.errors import UpstreamError, QueueFullError, QueueTimeoutError

log = logging.getLogger("llm")

SYSTEM_PROMPT = textwrap.dedent("""\
    You are an expert software engineer. Generate production-quality, runnable code
    for the user's requested website or web application.

    Stack defaults (unless the user specifies otherwise):
    - React 18 + TypeScript 5, bundled with Vite
    - Tailwind CSS for styling
    - Source under src/, imports between project folders use the '@/' alias

    Rules:
    - Always output the full runnable project for the stack.
    - Include every file needed to run it (package.json, index.html, src/main.tsx, components).
    - Gate external API calls behind environment variables.
    - Keep code modular and strongly typed. No TODOs. No prose between files.

    Output format (strict):
    - Multi-file projects, as a virtual file tree of repeating blocks:
      /// file: path/to/file.ext
      <contents>
      /// endfile
    - Single-file requests: output only that file's contents.
    - Always finish with a standalone HTML preview of the result:
      /// file: preview.html
      <!DOCTYPE html>
      <html lang="en">
      <head>
        <meta charset="UTF-8" />
        <meta name="viewport" content="width=device-width, initial-scale=1.0" />
        <title>Preview</title>
        <script src="https://cdn.tailwindcss.com"></script>
      </head>
      <body>
        <!-- minimal preview replicating the user's request -->
      </body>
      </html>
      /// endfile
    - Never wrap the file blocks in markdown fences.
    """)

FOLLOW_UP_PROMPT = textwrap.dedent("""\
    This is a follow-up request on the project generated earlier in this conversation.
    Output ONLY the files that change, each as a complete /// file: block, followed by an
    updated preview.html block. Start with one or two sentences saying what changed.
    """)

HISTORY_CHAR_LIMIT = 4000


def build_messages(prompt: str, history: list = (), is_first_request: bool = True,
                   history_limit: int = 10) -> list:
    system = SYSTEM_PROMPT if is_first_request else SYSTEM_PROMPT + "\n" + FOLLOW_UP_PROMPT
    messages = [{"role": "system", "content": system}]
    if not is_first_request:
        for msg in list(history)[-history_limit:]:
            role    = msg.get("role") if isinstance(msg, dict) else getattr(msg, "role", "")
            content = msg.get("content") if isinstance(msg, dict) else getattr(msg, "content", "")
            if role in ("user", "assistant") and content:
                messages.append({"role": role, "content": content[:HISTORY_CHAR_LIMIT]})
    messages.append({"role": "user", "content": prompt})
    return messages


# ── Retry ─────────────────────────────────────────────────────────────────────

def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.retryable


async def with_retry(fn: Callable[[], Awaitable], *, max_attempts: int = 3,
                     base_delay: float = 1.0, max_delay: float = 5.0, factor: float = 2.0,
                     retry_on: Callable[[BaseException], bool] = _is_retryable,
                     sleep: Callable[[float], Awaitable] = asyncio.sleep):
    """Await fn() up to max_attempts times, backing off between retryable failures."""
    delay = base_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_attempts or not retry_on(e):
                raise
            retry_after = getattr(e, "retry_after", None)
            wait = min(retry_after if retry_after is not None else delay, max_delay)
            log.warning(f"   ⚠ attempt {attempt}/{max_attempts} failed: {e} — retrying in {wait:.1f}s")
            await sleep(wait)
            delay = min(delay * factor, max_delay)


# ── Request queue ─────────────────────────────────────────────────────────────

class RequestQueue:
    """Serializes upstream call starts with a minimum spacing and a bounded wait."""

    def __init__(self, min_interval: float = 3.0, max_size: int = 50, max_wait: float = 300.0,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self.min_interval = min_interval
        self.max_size     = max_size
        self.max_wait     = max_wait
        self._sleep       = sleep
        self._lock        = asyncio.Lock()
        self._waiting     = 0
        self._processing  = False
        self._last_start  = 0.0
        self._backoff_until = 0.0
        self.consecutive_failures = 0

    async def run(self, fn: Callable[[], Awaitable]):
        if self._waiting >= self.max_size:
            raise QueueFullError("Request queue is full. Please try again later.")
        self._waiting += 1
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.max_wait)
        except asyncio.TimeoutError:
            raise QueueTimeoutError("Request timeout. The queue was too busy.") from None
        finally:
            self._waiting -= 1

        self._processing = True
        try:
            await self._pace()
            self._last_start = time.monotonic()
            result = await fn()
            self.consecutive_failures = 0
            return result
        except UpstreamError as e:
            if e.status == 429:
                self.consecutive_failures += 1
                backoff = e.retry_after or min(2 ** self.consecutive_failures, 30)
                self._backoff_until = time.monotonic() + backoff
                log.warning(f"   ⏳ rate limited — backing off {backoff:.0f}s")
            raise
        finally:
            self._processing = False
            self._lock.release()

    async def _pace(self):
        now  = time.monotonic()
        wait = max(self._backoff_until - now,
                   self._last_start + self.min_interval - now if self._last_start else 0.0)
        if wait > 0:
            await self._sleep(wait)

    def info(self) -> dict:
        return {
            "queueLength":          self._waiting,
            "isProcessing":         self._processing,
            "consecutiveFailures":  self.consecutive_failures,
            "estimatedWaitTime":    int(self._waiting * self.min_interval * 1000),
        }


def queue_status(queue_length: int, is_processing: bool) -> str:
    if queue_length == 0:
        return "processing" if is_processing else "ready"
    if queue_length <= 5:
        return "normal"
    if queue_length <= 20:
        return "busy"
    return "overloaded"


def format_wait_time(ms: int) -> str:
    seconds = -(-ms // 1000)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{-(-seconds // 60)}m"
    return f"{seconds // 3600}h {-(-(seconds % 3600) // 60)}m"


# ── Client ────────────────────────────────────────────────────────────────────

def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    try:
        return float(raw) if raw else None
    except ValueError:
        return None


def parse_sse_line(line: str) -> Optional[str]:
    """Text delta from one SSE line; '' for keep-alives, None once the stream is done."""
    line = line.strip()
    if not line.startswith("data:"):
        return ""
    data = line[5:].strip()
    if data == "[DONE]":
        return None
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        return ""
    if chunk.get("error"):
        err = chunk["error"]
        raise UpstreamError(err.get("message", "upstream error") if isinstance(err, dict) else str(err),
                            status=err.get("code") if isinstance(err, dict) and isinstance(err.get("code"), int) else None)
    choices = chunk.get("choices") or [{}]
    return (choices[0].get("delta") or {}).get("content") or ""


class ChatClient:
    def __init__(self, settings: Settings, queue: Optional[RequestQueue] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self.settings  = settings
        self.queue     = queue or RequestQueue(settings.min_request_interval,
                                               settings.max_queue_size, settings.max_queue_wait)
        self._transport = transport
        self._sleep     = sleep

    @property
    def configured(self) -> bool:
        return bool(self.settings.api_key)

    def _client(self) -> httpx.AsyncClient:
        s = self.settings
        return httpx.AsyncClient(
            base_url=s.api_base,
            headers={
                "Authorization": f"Bearer {s.api_key}",
                "HTTP-Referer":  s.site_url,
                "X-Title":       s.site_name,
            },
            timeout=httpx.Timeout(s.request_timeout, connect=15.0),
            transport=self._transport,
        )

    def _payload(self, messages: list, stream: bool) -> dict:
        return {
            "model":       self.settings.model,
            "messages":    messages,
            "max_tokens":  self.settings.max_tokens,
            "temperature": self.settings.temperature,
            "stream":      stream,
        }

    async def _send(self, client: httpx.AsyncClient, payload: dict, stream: bool) -> httpx.Response:
        try:
            req  = client.build_request("POST", "/chat/completions", json=payload)
            resp = await client.send(req, stream=stream)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Upstream timeout: {e}") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Upstream connection failed: {e}") from e
        if resp.status_code >= 400:
            body = (await resp.aread()).decode("utf-8", "replace")[:300]
            await resp.aclose()
            raise UpstreamError(f"Upstream returned {resp.status_code}: {body}",
                                status=resp.status_code, retry_after=_retry_after(resp))
        return resp

    async def _call(self, fn: Callable[[], Awaitable]):
        s = self.settings
        return await self.queue.run(lambda: with_retry(
            fn, max_attempts=s.max_retries, base_delay=s.retry_base_delay,
            max_delay=s.retry_max_delay, sleep=self._sleep))

    async def complete(self, prompt: str, history: list = (), is_first_request: bool = True) -> str:
        messages = build_messages(prompt, history, is_first_request, self.settings.history_messages)
        async with self._client() as client:
            resp = await self._call(lambda: self._send(client, self._payload(messages, False), False))
            data = resp.json()
        choices = data.get("choices") or [{}]
        text = ((choices[0].get("message") or {}).get("content") or "").strip()
        log.info(f"   🧠 completion: {len(text)} chars")
        return text

    async def stream(self, prompt: str, history: list = (), is_first_request: bool = True) -> AsyncIterator[str]:
        """Yield text deltas as they arrive. Retries only cover opening the stream."""
        messages = build_messages(prompt, history, is_first_request, self.settings.history_messages)
        async with self._client() as client:
            resp = await self._call(lambda: self._send(client, self._payload(messages, True), True))
            try:
                async for line in resp.aiter_lines():
                    delta = parse_sse_line(line)
                    if delta is None:
                        break
                    if delta:
                        yield delta
            except httpx.HTTPError as e:
                raise UpstreamError(f"Stream interrupted: {e}") from e
            finally:
                await resp.aclose()
