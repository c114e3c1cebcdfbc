from forge.models import GENERATING_PLACEHOLDER
from forge.preview import (SANDBOX, TAILWIND_CDN, compose_preview, is_full_document,
                           render_frame, render_host_page)


def test_full_document_passes_through():
    doc = compose_preview("  <!DOCTYPE html>\n<html><body>x</body></html>\n")
    assert doc.kind == "document"
    assert doc.html == "<!DOCTYPE html>\n<html><body>x</body></html>"


def test_fragment_is_wrapped_with_styling_runtime():
    doc = compose_preview('<div class="p-4">Hello</div>')
    assert doc.kind == "fragment"
    assert TAILWIND_CDN in doc.html
    assert '<div class="p-4">Hello</div>' in doc.html
    assert is_full_document(doc.html)


def test_placeholder_and_empty_are_distinct():
    loading = compose_preview(GENERATING_PLACEHOLDER)
    empty = compose_preview("")
    assert loading.kind == "loading"
    assert empty.kind == "empty"
    assert loading.html != empty.html
    assert compose_preview(None).kind == "empty"


def test_is_full_document_allows_leading_comment():
    assert is_full_document("<!-- generated -->\n<html lang='en'></html>")
    assert not is_full_document("<section>hi</section>")


def test_frame_is_sandboxed_and_escaped():
    doc = compose_preview('<script>alert("x")</script>')
    frame = render_frame(doc, title='A "quoted" title')
    assert f'sandbox="{SANDBOX}"' in frame
    assert "&lt;script&gt;alert(&quot;x&quot;)&lt;/script&gt;" in frame
    assert '<script>alert("x")' not in frame
    assert 'title="A &quot;quoted&quot; title"' in frame


def test_host_page_embeds_frame():
    page = render_host_page(compose_preview("<p>hi</p>"), title="p1")
    assert page.startswith("<!DOCTYPE html>")
    assert "<iframe" in page
    assert "<title>p1</title>" in page


def test_document_after_leading_prose():
    doc = compose_preview("Preview:\n<!DOCTYPE html>\n<html><body>x</body></html>")
    assert doc.kind == "document"
    assert doc.html.startswith("<!DOCTYPE html>")


def test_host_page_is_not_indented():
    page = render_host_page(compose_preview("<p>one</p>\n<p>two</p>"))
    assert all(not line.startswith(" ") for line in page.splitlines())
