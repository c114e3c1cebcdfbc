import html, re, textwrap
from dataclasses import dataclass

from forge.models import GENERATING_PLACEHOLDER

TAILWIND_CDN = "https://cdn.tailwindcss.com"
SANDBOX      = "allow-scripts allow-same-origin"

DOCUMENT_RE = re.compile(r"<!DOCTYPE\s+html|<html[\s>]", re.IGNORECASE)

FRAGMENT_SHELL = textwrap.dedent("""\
    <!DOCTYPE html>
    <html lang="en">
    <head>
      <meta charset="UTF-8" />
      <meta name="viewport" content="width=device-width, initial-scale=1.0" />
      <title>Preview</title>
      <script src="{cdn}"></script>
    </head>
    <body class="bg-white">
    {body}
    </body>
    </html>
    """)

LOADING_PAGE = FRAGMENT_SHELL.format(
    cdn=TAILWIND_CDN,
    body='<div class="flex h-screen items-center justify-center text-gray-400 animate-pulse">Generating preview…</div>',
)
EMPTY_PAGE = FRAGMENT_SHELL.format(
    cdn=TAILWIND_CDN,
    body='<div class="flex h-screen items-center justify-center text-gray-500">No preview available</div>',
)


@dataclass(frozen=True)
class PreviewDocument:
    kind: str      # "document" | "fragment" | "loading" | "empty"
    html: str


def is_full_document(payload: str) -> bool:
    return DOCUMENT_RE.search(payload or "") is not None


def compose_preview(payload: str) -> PreviewDocument:
    """Pick how an (untrusted) preview payload gets rendered."""
    if payload is None or not payload.strip():
        return PreviewDocument("empty", EMPTY_PAGE)
    if payload.strip() == GENERATING_PLACEHOLDER:
        return PreviewDocument("loading", LOADING_PAGE)
    m = DOCUMENT_RE.search(payload)
    if m:
        # prose ahead of the document would render above the doctype
        return PreviewDocument("document", payload[m.start():].strip())
    return PreviewDocument("fragment", FRAGMENT_SHELL.format(cdn=TAILWIND_CDN, body=payload.strip()))


def render_frame(doc: PreviewDocument, title: str = "Preview") -> str:
    """Host-page markup: the payload only ever lives inside a sandboxed srcdoc."""
    return (
        f'<iframe title="{html.escape(title)}" data-kind="{doc.kind}" '
        f'sandbox="{SANDBOX}" srcdoc="{html.escape(doc.html, quote=True)}" '
        f'style="width:100%;height:100%;border:0"></iframe>'
    )


HOST_PAGE = textwrap.dedent("""\
    <!DOCTYPE html>
    <html lang="en">
    <head><meta charset="UTF-8" /><title>{title}</title>
    <style>html,body{{margin:0;height:100%}}</style></head>
    <body>{frame}</body>
    </html>
    """)


def render_host_page(doc: PreviewDocument, title: str = "Preview") -> str:
    return HOST_PAGE.format(title=html.escape(title), frame=render_frame(doc, title))
