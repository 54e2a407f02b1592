from __future__ import annotations

import io
import struct
import zipfile
from typing import Callable, List, Optional, Sequence, Union
from xml.sax.saxutils import escape

import pytest
import requests

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"

CHALLENGE_HTML = (
    "<html><head><script>document.cookie='cookiesession1=678B2868ABCDEF';"
    "eval(function(p,a,c,k,e,d){return p}('0 1',2,2,'x|y'.split('|'),0,{}));"
    "window.location='/LawViewWord.aspx?LawID=1&mode=DOC&language=ar';</script></head></html>"
)


def build_docx_xml(paragraphs: Sequence[str]) -> str:
    body = "".join(
        f'<w:p><w:r><w:t xml:space="preserve">{escape(p)}</w:t></w:r></w:p>' for p in paragraphs
    )
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f'<w:document xmlns:w="{W_NS}"><w:body>{body}</w:body></w:document>'
    )


def build_docx(paragraphs: Sequence[str]) -> bytes:
    xml = build_docx_xml(paragraphs)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as z:
        z.writestr("[Content_Types].xml", "<Types/>")
        z.writestr("word/document.xml", xml)
    return buf.getvalue()


def build_corrupt_docx(paragraphs: Sequence[str]) -> bytes:
    """A DOCX whose deflated word/document.xml stream is scrambled."""
    xml = build_docx_xml(paragraphs)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as z:
        z.writestr("word/document.xml", xml)
        info = z.getinfo("word/document.xml")
    data = bytearray(buf.getvalue())

    name_len, extra_len = struct.unpack("<HH", bytes(data[26:30]))
    start = info.header_offset + 30 + name_len + extra_len
    for i in range(start, start + info.compress_size):
        data[i] ^= 0xFF
    return bytes(data)


def make_response(
    status: int = 200,
    body: Union[str, bytes] = "",
    *,
    url: str = "https://www.almeezan.qa/",
    content_type: str = "text/html; charset=utf-8",
) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = body.encode("utf-8") if isinstance(body, str) else body
    resp.headers["Content-Type"] = content_type
    resp.encoding = "utf-8" if "charset=" in content_type else None
    resp.url = url
    return resp


class FakeSession:
    """Replays queued responses (or raises queued exceptions) for every GET."""

    def __init__(self, outcomes: Optional[List[Union[requests.Response, Exception]]] = None):
        self.outcomes = list(outcomes or [])
        self.calls: List[str] = []

    def get(self, url, headers=None, timeout=None, allow_redirects=True):
        self.calls.append(url)
        if not self.outcomes:
            raise AssertionError(f"unexpected GET {url}")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def docx_factory() -> Callable[[Sequence[str]], bytes]:
    return build_docx


@pytest.fixture
def response_factory() -> Callable[..., requests.Response]:
    return make_response


@pytest.fixture
def challenge_html() -> str:
    return CHALLENGE_HTML


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def corrupt_docx_factory() -> Callable[[Sequence[str]], bytes]:
    return build_corrupt_docx
