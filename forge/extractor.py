import logging, posixpath, re
from typing import Optional

from forge.models import FileRecord
from forge.segmenter import scan_blocks

log = logging.getLogger("extractor")


def safe_relative_path(path: str) -> Optional[str]:
    """Normalize a model-supplied path; None if it is empty or escapes the root."""
    p = (path or "").strip().strip("`'\"*").strip()
    p = p.replace("\\", "/")
    if not p or p.startswith("/") or re.match(r"^[A-Za-z]:", p):
        return None
    p = posixpath.normpath(p)
    if p in (".", "") or p == ".." or p.startswith("../"):
        return None
    return p


def extract_files(text: str) -> list:
    """
    Split a completed response into FileRecords, in the order they appear.

    The preview block is never a project file. Blocks with a bad path or an
    empty body are skipped one at a time; duplicates are kept as-is.
    """
    if not text:
        return []
    files = []
    for block in scan_blocks(text, complete=True).blocks:
        try:
            if block.is_preview:
                continue
            rel = safe_relative_path(block.path)
            if rel is None:
                log.warning(f"   ⚠ skipping block with unsafe path: {block.path!r}")
                continue
            content = block.content
            if not content.strip():
                log.info(f"   skipping empty block: {rel}")
                continue
            files.append(FileRecord(path=rel, content=content + "\n"))
        except Exception as e:
            log.warning(f"   ⚠ could not extract block {block.path!r}: {e}")
    return files


def extract_preview(text: str) -> str:
    """Preview block body, else the <body> of a lone HTML answer, else ''."""
    if not text:
        return ""
    try:
        for block in scan_blocks(text, complete=True).blocks:
            if block.is_preview:
                return block.content.strip()
        start = text.find("<body")
        if start == -1:
            return ""
        open_end = text.find(">", start)
        if open_end == -1:
            return ""
        end = text.find("</body>", open_end)
        return (text[open_end + 1:end] if end != -1 else text[open_end + 1:]).strip()
    except Exception as e:
        log.warning(f"   extract_preview failed: {e}")
        return ""
