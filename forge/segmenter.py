"""
Response segmentation: splits raw model output into preview / code / prose.

The model is asked to emit repeating blocks:

    /// file: src/App.tsx
    <contents>
    /// endfile

with a final `preview.html` block for the UI preview. The text is scanned
line by line as a small state machine (outside a block → inside block(path)
→ outside) so a truncated stream never leaks half a marker into the UI.
"""
import logging, re
from dataclasses import dataclass, field
from typing import Optional

from forge.models import ParsedTurn, PREVIEW_FILE, GENERATING_PLACEHOLDER

log = logging.getLogger("segmenter")

FILE_RE  = re.compile(r"^\s*///\s*file:\s*(.+?)\s*$")
END_RE   = re.compile(r"^\s*///\s*endfile\s*$")
FENCE_RE = re.compile(r"^\s*```[\w+#.-]*\s*$")
FENCED_BLOCK_RE = re.compile(r"^[ \t]*```([\w+#.-]*)[ \t]*\n(.*?)^[ \t]*```[ \t]*$",
                             re.DOTALL | re.MULTILINE)
OPEN_FENCE_RE   = re.compile(r"^[ \t]*```([\w+#.-]*)[ \t]*\n(.*)\Z", re.DOTALL | re.MULTILINE)

# A line that plausibly starts source code rather than prose
CODE_START_RE = re.compile(
    r"^\s*(?:"
    r"import\s+[\w{*'\"]|"
    r"export\s+(?:default|const|function|class|interface|type|async)\b|"
    r"(?:async\s+)?function\s*\*?\s*\w+\s*\(|"
    r"(?:const|let|var)\s+[\w{\[]+\s*[=:]|"
    r"class\s+\w+|"
    r"def\s+\w+\s*\(|"
    r"from\s+[\w.]+\s+import\s|"
    r"['\"]use (?:client|strict)['\"]|"
    r"<(?:(?i:!DOCTYPE)|html|head|body|div|template|script|style|section|main|svg)\b|"
    r"#include\s|"
    r"package\s+[\w.]+;?\s*$"
    r")"
)

MARKER_PREFIXES = ("/// file:", "/// endfile")
FOLLOW_UP_PROSE_LIMIT = 300


# ── Block scanner (shared with the file extractor) ───────────────────────────

@dataclass
class Block:
    path:   str
    lines:  list = field(default_factory=list)
    closed: bool = False

    @property
    def is_preview(self) -> bool:
        return _basename(self.path).lower() == PREVIEW_FILE

    @property
    def content(self) -> str:
        return strip_fences("\n".join(self.lines))


@dataclass
class Scan:
    blocks:  list
    outside: list   # prose lines not inside any block


def _basename(path: str) -> str:
    return path.strip().strip("`'\"").replace("\\", "/").rstrip("/").split("/")[-1]


def _is_partial_marker(line: str) -> bool:
    s = re.sub(r"\s+", "", line)
    if not s.startswith("/"):
        return False
    return any(p.replace(" ", "").startswith(s) for p in MARKER_PREFIXES)


def _drop_partial_marker(text: str) -> str:
    """Hold back a trailing, unterminated line that could still become a marker.

    An opening marker whose line has not ended yet is held back too: its path
    may still be growing.
    """
    if text.endswith(("\n", "\r")):
        return text
    last = text.rpartition("\n")[2]
    if _is_partial_marker(last) or FILE_RE.match(last):
        return text[:len(text) - len(last)]
    return text


def scan_blocks(text: str, complete: bool = True) -> Scan:
    """Walk the text once and split it into named blocks and outside lines."""
    if not complete:
        text = _drop_partial_marker(text)
    lines = text.splitlines()

    blocks, outside = [], []
    current: Optional[Block] = None
    for line in lines:
        m = FILE_RE.match(line)
        if m:
            if current is not None:
                current.closed = True        # next marker terminates the block
            current = Block(path=m.group(1))
            blocks.append(current)
            continue
        if END_RE.match(line):
            if current is not None:
                current.closed = True
                current = None
            continue
        if current is not None:
            current.lines.append(line)
        else:
            outside.append(line)

    if current is not None and complete:
        current.closed = True
    return Scan(blocks=blocks, outside=outside)


# ── Text clean-up ─────────────────────────────────────────────────────────────

def strip_fences(content: str) -> str:
    """Drop leading ```lang / trailing ``` artifacts around a block body."""
    lines = content.splitlines()
    while lines and (not lines[0].strip() or FENCE_RE.match(lines[0])):
        lines.pop(0)
    while lines and (not lines[-1].strip() or FENCE_RE.match(lines[-1])):
        lines.pop()
    return "\n".join(lines)


def clean_description(text: str) -> str:
    lines = [l.rstrip() for l in text.splitlines()
             if not FENCE_RE.match(l) and not END_RE.match(l)]
    out = "\n".join(lines)
    out = re.sub(r"\*\*(.*?)\*\*", r"\1", out)
    out = re.sub(r"^([ \t]*)[-*][ \t]+", r"\1• ", out, flags=re.MULTILINE)
    out = re.sub(r"\n{3,}", "\n\n", out)
    return out.strip()


def _render_block(path: str, body: str) -> str:
    return f"/// file: {path}\n{body}\n/// endfile"


def _looks_like_code(lang: str, body: str) -> bool:
    if not body.strip():
        return False
    if lang:
        return True
    if any(CODE_START_RE.match(l) for l in body.splitlines()):
        return True
    return any(ch in body for ch in "{};=<>")


def _follow_up_description(prose: str, paths: list) -> str:
    if prose and len(prose) <= FOLLOW_UP_PROSE_LIMIT:
        return prose
    if not paths:
        return prose
    return "Updated files: " + ", ".join(paths)


# ── Strategies, in precedence order ──────────────────────────────────────────

def _from_markers(scan: Scan, complete: bool, is_first_request: bool) -> ParsedTurn:
    turn = ParsedTurn()
    code_parts, paths = [], []
    for b in scan.blocks:
        streaming = not b.closed and not complete
        if streaming:
            turn.pending = b.path or "…"
        if b.is_preview:
            turn.preview_html = GENERATING_PLACEHOLDER if streaming else b.content
            continue
        if streaming:
            code_parts.append(_render_block(b.path, GENERATING_PLACEHOLDER))
            paths.append(b.path)
            continue
        body = b.content
        if body.strip():
            code_parts.append(_render_block(b.path, body))
            paths.append(b.path)

    turn.code = "\n\n".join(code_parts)
    prose = clean_description("\n".join(scan.outside))
    if not is_first_request:
        prose = _follow_up_description(prose, paths)
    turn.description = prose
    return turn


def _from_fences(text: str, complete: bool) -> Optional[ParsedTurn]:
    code_parts, spans = [], []
    for m in FENCED_BLOCK_RE.finditer(text):
        lang, body = m.group(1), m.group(2)
        if _looks_like_code(lang, body):
            code_parts.append(body.strip("\n"))
            spans.append((m.start(), m.end()))

    pending = None
    tail_start = spans[-1][1] if spans else 0
    if not complete:
        # an opening fence with no closer yet: still being generated
        rest = text[tail_start:]
        om = OPEN_FENCE_RE.search(rest)
        if om and not FENCED_BLOCK_RE.search(rest):
            code_parts.append(GENERATING_PLACEHOLDER)
            spans.append((tail_start + om.start(), len(text)))
            pending = "code"

    if not code_parts:
        return None
    prose, pos = [], 0
    for start, end in spans:
        prose.append(text[pos:start])
        pos = end
    prose.append(text[pos:])
    return ParsedTurn(code="\n\n".join(code_parts),
                      description=clean_description("".join(prose)),
                      pending=pending)


def _from_position(text: str) -> Optional[ParsedTurn]:
    lines = text.splitlines()
    for i, line in enumerate(lines):
        if CODE_START_RE.match(line):
            code = strip_fences("\n".join(lines[i:]))
            return ParsedTurn(code=code,
                              description=clean_description("\n".join(lines[:i])))
    return None


def segment(text: str, *, complete: bool = False, is_first_request: bool = True) -> ParsedTurn:
    """
    Derive {preview_html, code, description} from a response snapshot.

    Pure and total: recomputed from scratch on every chunk, never raises.
    `complete=False` treats a trailing unterminated block as provisional and
    shows GENERATING_PLACEHOLDER in its channel instead of partial content.
    """
    if not text or not text.strip():
        return ParsedTurn()
    try:
        if not complete:
            text = _drop_partial_marker(text)
        scan = scan_blocks(text, complete)
        if scan.blocks:
            return _from_markers(scan, complete, is_first_request)
        turn = _from_fences(text, complete) or _from_position(text)
        if turn is not None:
            return turn
        return ParsedTurn(description=clean_description(text) or text.strip())
    except Exception as e:
        log.warning(f"   segment failed, falling back to raw text: {e}")
        return ParsedTurn(code=text, description="")
