import fitz
import httpx
import pytest

from deckforge.core.errors import FetchError
from deckforge.core.extract import (
    extract_html_text,
    extract_pdf_text,
    extract_plain_text,
    extract_text_operators,
    fetch_url_text,
    html_to_text,
    placeholder_text,
)

from conftest import static_transport


def make_pdf(text):
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


def test_html_scripts_and_entities():
    markup = "<html><script>bad()</script><p>Hello&nbsp;World</p></html>"
    assert html_to_text(markup) == "Hello World"


def test_html_drops_styles_and_comments():
    markup = "<style>p { color: red }</style><!-- hidden --><h1>Title</h1><p>Body &amp; more</p>"
    assert html_to_text(markup) == "Title Body & more"


def test_empty_html_falls_back_to_placeholder():
    assert extract_html_text("<html><script>x()</script></html>", "Empty Page") == placeholder_text("Empty Page")


def test_pdf_text_layer():
    text = extract_pdf_text(make_pdf("Photosynthesis converts light"), "Biology")
    assert "Photosynthesis converts light" in text


def test_text_operator_scan():
    data = b"%PDF-1.4\nBT /F1 12 Tf 72 712 Td (Hello PDF) Tj ET\n%%EOF"
    assert extract_text_operators(data) == "Hello PDF"


def test_unreadable_pdf_gets_placeholder():
    text = extract_pdf_text(b"definitely not a pdf", "Broken Upload")
    assert text == "Document: Broken Upload - Content could not be extracted"


def test_plain_text_tolerates_bad_bytes():
    text = extract_plain_text(b"# Notes\n\ncaf\xff line", "Notes")
    assert text.startswith("# Notes caf")
    assert "\ufffd" in text


def test_fetch_html_page():
    client = httpx.Client(transport=static_transport(body="<p>Remote <b>content</b></p>"))
    assert fetch_url_text("https://example.com/page", "Page", client=client) == "Remote content"


def test_fetch_plain_text():
    client = httpx.Client(transport=static_transport(body="line one\nline two", content_type="text/plain"))
    assert fetch_url_text("https://example.com/a.txt", "A", client=client) == "line one line two"


def test_fetch_pdf():
    transport = static_transport(body=make_pdf("Remote PDF body"), content_type="application/pdf")
    text = fetch_url_text("https://example.com/a.pdf", "A", client=httpx.Client(transport=transport))
    assert "Remote PDF body" in text


@pytest.mark.parametrize("status_code", [404, 500])
def test_fetch_non_success_status_raises(status_code):
    client = httpx.Client(transport=static_transport(status_code=status_code, body="nope"))
    with pytest.raises(FetchError, match=str(status_code)):
        fetch_url_text("https://example.com/missing", "Missing", client=client)


def test_fetch_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(FetchError, match="connection refused"):
        fetch_url_text("https://example.com/", "Down", client=client)
