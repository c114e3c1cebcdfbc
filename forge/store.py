"""
On-disk project store: one directory per project under Settings.projects_dir.
"""
import asyncio, logging, re, secrets, time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from forge.errors import InvalidProjectId
from forge.extractor import safe_relative_path
from forge.models import FileRecord

log = logging.getLogger("store")

PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# Root config files that get the aggressive markdown cleanup
MARKDOWN_CONFIG_FILES = [
    "package.json", "next.config.js", "tsconfig.json",
    "tailwind.config.js", "tailwind.config.cjs",
    "postcss.config.js", "postcss.config.cjs",
]
MARKDOWN_SOURCE_DIRS = ["app", "components", "pages", "src", "styles", "types"]
MARKDOWN_SOURCE_EXTS = (".tsx", ".ts", ".jsx", ".js", ".css")

_FENCE_LINE_RE  = re.compile(r"^[ \t]*```[\w-]*[ \t]*$", re.MULTILINE)
_HEADER_LINE_RE = re.compile(r"^#{1,6}[ \t]+", re.MULTILINE)
_LIST_LINE_RE   = re.compile(r"^[ \t]*[-*][ \t]+.*$", re.MULTILINE)


def generate_project_id() -> str:
    return f"project-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def validate_project_id(project_id) -> str:
    if not isinstance(project_id, str) or not PROJECT_ID_RE.match(project_id):
        raise InvalidProjectId(f"Invalid project id: {project_id!r}")
    return project_id


def project_path(projects_dir: Path, project_id: str) -> Path:
    return Path(projects_dir) / validate_project_id(project_id)


def save_files(project_dir: Path, files: Iterable[FileRecord]) -> list:
    """Write every file below project_dir; unsafe paths are skipped. Returns saved paths."""
    project_dir.mkdir(parents=True, exist_ok=True)
    saved = []
    for f in files:
        rel = safe_relative_path(f.path)
        if rel is None:
            log.warning(f"   ⚠ skipping unsafe path: {f.path!r}")
            continue
        fp = project_dir / rel
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(f.content, encoding="utf-8")
        saved.append(rel)
        sz = f"{len(f.content)//1024:.1f}KB" if len(f.content) >= 1024 else f"{len(f.content)}B"
        log.info(f"   ✎ {rel} ({sz})")
    return saved


def write_readme(project_dir: Path, project_id: str, paths: list) -> Path:
    structure = "\n".join(f"- {p}" for p in paths)
    content = (
        f"# Generated Project: {project_id}\n\n"
        "## Quick Start\n\n"
        "### Run with Node.js\n"
        "```bash\n"
        "npm install\n"
        "npm run dev\n"
        "```\n\n"
        "## Project Structure\n"
        f"{structure}\n\n"
        "## Generated Files\n"
        f"- Total files: {len(paths)}\n"
        f"- Generated: {datetime.now(timezone.utc).isoformat()}\n"
    )
    fp = project_dir / "README.md"
    fp.write_text(content, encoding="utf-8")
    return fp


# ── Markdown cleanup ──────────────────────────────────────────────────────────

def _has_markdown(content: str) -> bool:
    return "```" in content or bool(_HEADER_LINE_RE.search(content))


def clean_markdown(content: str, config: bool = False) -> str:
    """Drop fence lines; for config files also cut at the first markdown header."""
    cleaned = _FENCE_LINE_RE.sub("", content)
    if config:
        cleaned = _HEADER_LINE_RE.split(cleaned, maxsplit=1)[0]
        cleaned = _LIST_LINE_RE.sub("", cleaned)
    return cleaned.strip() + "\n"


def strip_markdown_artifacts(project_dir: Path) -> list:
    """Clean fences/headers out of saved files. Returns the relative paths rewritten."""
    targets = [(project_dir / name, True) for name in MARKDOWN_CONFIG_FILES]
    for sub in MARKDOWN_SOURCE_DIRS:
        d = project_dir / sub
        if d.is_dir():
            targets += [(p, False) for p in sorted(d.iterdir())
                        if p.is_file() and p.suffix in MARKDOWN_SOURCE_EXTS]

    fixed = []
    for fp, config in targets:
        try:
            content = fp.read_text(encoding="utf-8")
        except (FileNotFoundError, UnicodeDecodeError):
            continue
        # source files only lose fences; '#' lines there may be code
        dirty = _has_markdown(content) if config else "```" in content
        if not dirty:
            continue
        cleaned = clean_markdown(content, config=config)
        if cleaned != content:
            fp.write_text(cleaned, encoding="utf-8")
            fixed.append(fp.relative_to(project_dir).as_posix())
    if fixed:
        log.info(f"   🧹 markdown cleaned: {fixed}")
    return fixed


# ── Locks ─────────────────────────────────────────────────────────────────────

class ProjectLocks:
    """One asyncio.Lock per project id; save and fix passes on a project never overlap."""

    def __init__(self):
        self._locks = {}

    def get(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    def __call__(self, project_id: str) -> asyncio.Lock:
        return self.get(project_id)
