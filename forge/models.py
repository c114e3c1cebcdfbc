from dataclasses import dataclass, field, asdict
from typing import Optional
import time

PREVIEW_FILE = "preview.html"
GENERATING_PLACEHOLDER = "⏳ generating…"


@dataclass(frozen=True)
class FileRecord:
    path:    str
    content: str


@dataclass
class ParsedTurn:
    preview_html: str = ""
    code:         str = ""
    description:  str = ""
    pending:      Optional[str] = None   # path of a block still streaming

    def to_dict(self) -> dict:
        return {"preview": self.preview_html, "code": self.code,
                "description": self.description, "pending": self.pending}


@dataclass
class ConversationMessage:
    role:    str                      # "user" | "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)
    generated_content: Optional[ParsedTurn] = None


@dataclass
class FixResult:
    success:     bool
    fixes:       list = field(default_factory=list)
    errors:      list = field(default_factory=list)
    fixed_files: list = field(default_factory=list)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["fixedFiles"] = d.pop("fixed_files")
        return d


class ResponseBuffer:
    """Accumulated text of one model turn. Every append re-derives the parse."""

    def __init__(self, is_first_request: bool = True):
        self.is_first_request = is_first_request
        self._parts: list[str] = []
        self.text = ""

    def append(self, chunk: str) -> str:
        if chunk:
            self._parts.append(chunk)
            self.text = "".join(self._parts)
        return self.text

    def parse(self, complete: bool = False) -> ParsedTurn:
        from forge.segmenter import segment
        return segment(self.text, complete=complete,
                       is_first_request=self.is_first_request)

    def __len__(self):
        return len(self.text)
