from __future__ import annotations

import io
import logging
import os
import re
import subprocess
import tempfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from xml.etree import ElementTree as ET

from bs4 import BeautifulSoup
from pdfminer.high_level import extract_text as pdf_extract_text
from striprtf.striprtf import rtf_to_text

from almeezan.errors import UnreadableSourceError

log = logging.getLogger(__name__)

KIND_DOCX = "docx"
KIND_LEGACY = "legacy"
KIND_PDF = "pdf"
KIND_MARKUP = "markup"

SOFFICE_TIMEOUT_SECONDS = 120.0

# Portal chrome that appears around LawViewWord / LawArticles content.
BOILERPLATE_RES = [
    re.compile(r"^فهرس الموضوعات$"),
    re.compile(r"^المواد$"),
    re.compile(r"^عدد المواد\s*:"),
    re.compile(r"^الميزان\s*\|"),
    re.compile(r"^الرجاء عدم اعتبار"),
]

CONTENT_REGION_IDS = ("divTreeDetails", "NotesHolders")

_BLOCK_TAGS = ["p", "div", "tr", "li", "td", "table", "h1", "h2", "h3", "h4", "h5", "h6"]


@dataclass(frozen=True)
class RawContent:
    data: bytes
    kind: str
    origin: str = ""


def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "").replace("\u00a0", " ")).strip()


def is_boilerplate(line: str) -> bool:
    return any(rx.search(line) for rx in BOILERPLATE_RES)


def _underscore_only(text: str) -> bool:
    return re.sub(r"[\s_]", "", text) == ""


# -----------------
# Sniffing
# -----------------


def looks_like_docx_bytes(content: bytes) -> bool:
    return (content or b"")[:4] == b"PK\x03\x04"


def looks_like_doc_ole_bytes(content: bytes) -> bool:
    # OLE Compound File signature (legacy .doc).
    return (content or b"")[:8] == b"\xD0\xCF\x11\xE0\xA1\xB1\x1A\xE1"


def looks_like_rtf_bytes(content: bytes) -> bool:
    head = (content or b"").lstrip()[:20]
    return head.startswith(b"{\\rtf") or head.startswith(b"{\\urtf")


def looks_like_pdf_bytes(content: bytes) -> bool:
    return (content or b"").lstrip()[:5] == b"%PDF-"


# -----------------
# Word documents
# -----------------


def docx_bytes_to_paragraphs(docx_bytes: bytes) -> List[str]:
    try:
        with zipfile.ZipFile(io.BytesIO(docx_bytes)) as z:
            xml = z.read("word/document.xml")
    # Damaged or encrypted members raise these from below zipfile's own errors.
    except (zipfile.BadZipFile, KeyError, zlib.error, RuntimeError, NotImplementedError, EOFError) as exc:
        raise UnreadableSourceError(f"Failed to read DOCX: {exc}") from exc

    # Textbox content is usually amendment callouts, not article text.
    xml_str = (xml or b"").decode("utf-8", errors="replace")
    xml_str = re.sub(r"<w:txbxContent\b.*?</w:txbxContent>", "", xml_str, flags=re.DOTALL)

    try:
        root = ET.fromstring(xml_str)
    except ET.ParseError as exc:
        raise UnreadableSourceError(f"Failed to parse DOCX XML: {exc}") from exc

    def local(tag: str) -> str:
        return tag.split("}", 1)[1] if "}" in tag else tag

    paras: List[str] = []
    for p in root.iter():
        if local(p.tag) != "p":
            continue
        parts: List[str] = []
        for node in p.iter():
            name = local(node.tag)
            if name == "t":
                if node.text:
                    parts.append(node.text)
            elif name == "tab":
                parts.append("\t")
            elif name in {"br", "cr"}:
                parts.append("\n")

        if not parts:
            continue
        txt = "".join(parts).replace("\u00a0", " ").replace("\r", "")
        txt = re.sub(r"[ \t]+", " ", txt)
        txt = re.sub(r"\s*\n\s*", "\n", txt).strip()
        if not txt or _underscore_only(txt):
            continue
        paras.append(txt)

    return paras


def plain_text_to_paragraphs(text: str) -> List[str]:
    """Blank-line separated paragraphs, each collapsed onto one line."""
    paragraphs: List[str] = []
    current: List[str] = []

    def flush() -> None:
        if not current:
            return
        combined = normalize_whitespace(" ".join(current))
        current.clear()
        if combined and not _underscore_only(combined):
            paragraphs.append(combined)

    for raw in (text or "").replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = normalize_whitespace(raw)
        if not line:
            flush()
            continue
        current.append(line)
    flush()
    return paragraphs


def _rtf_codepage(rtf_str: str) -> str:
    m = re.search(r"\\ansicpg(\d+)", rtf_str[:4000])
    return f"cp{m.group(1)}" if m else "cp1252"


def rtf_bytes_to_text(rtf_bytes: bytes) -> str:
    rtf_str = (rtf_bytes or b"").decode("latin-1")
    encoding = _rtf_codepage(rtf_str)
    try:
        return rtf_to_text(rtf_str, encoding=encoding, errors="replace")
    except LookupError:
        return rtf_to_text(rtf_str, errors="replace")


def legacy_word_bytes_to_text(doc_bytes: bytes, *, suffix: str = ".doc") -> str:
    """Convert a legacy Word binary to plain text with headless LibreOffice."""
    soffice = os.getenv("ALMEEZAN_SOFFICE", "soffice")
    with tempfile.TemporaryDirectory(prefix="almeezan-doc-") as tmpdir:
        src = Path(tmpdir) / f"source{suffix}"
        src.write_bytes(doc_bytes)
        out_dir = Path(tmpdir) / "out"
        out_dir.mkdir()
        try:
            proc = subprocess.run(
                [soffice, "--headless", "--convert-to", "txt:Text", "--outdir", str(out_dir), str(src)],
                capture_output=True,
                timeout=SOFFICE_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as exc:
            raise UnreadableSourceError(f"LibreOffice converter not found: {soffice}") from exc
        except subprocess.TimeoutExpired as exc:
            raise UnreadableSourceError(
                f"Legacy conversion timed out after {SOFFICE_TIMEOUT_SECONDS:.0f}s"
            ) from exc

        if proc.returncode != 0:
            stderr = (proc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise UnreadableSourceError(f"Legacy conversion failed: {stderr or 'non-zero exit'}")

        expected = out_dir / f"{src.stem}.txt"
        candidates = [expected] if expected.exists() else sorted(out_dir.glob("*.txt"))
        if not candidates:
            raise UnreadableSourceError("Legacy conversion produced no text output")
        return candidates[0].read_text(encoding="utf-8", errors="replace")


def word_bytes_to_lines(data: bytes, *, file_name: str = "", legacy: bool = False) -> List[str]:
    """Read a Word source as OOXML first, then through the legacy converters."""
    docx_error: Optional[UnreadableSourceError] = None
    if not legacy:
        try:
            return docx_bytes_to_paragraphs(data)
        except UnreadableSourceError as exc:
            docx_error = exc

    try:
        if looks_like_rtf_bytes(data):
            text = rtf_bytes_to_text(data)
        else:
            suffix = ".doc" if looks_like_doc_ole_bytes(data) else (Path(file_name).suffix or ".doc")
            text = legacy_word_bytes_to_text(data, suffix=suffix)
    except UnreadableSourceError as exc:
        label = file_name or "document"
        if docx_error is not None:
            raise UnreadableSourceError(
                f"Unable to read legislation source ({label}): {docx_error}; legacy: {exc}"
            ) from exc
        raise UnreadableSourceError(f"Unable to read legislation source ({label}): {exc}") from exc

    return plain_text_to_paragraphs(text)


# -----------------
# PDF
# -----------------


def pdf_bytes_to_lines(pdf_bytes: bytes) -> List[str]:
    if not looks_like_pdf_bytes(pdf_bytes):
        raise UnreadableSourceError("Response is not a PDF document")
    try:
        text = pdf_extract_text(io.BytesIO(pdf_bytes))
    except Exception as exc:
        raise UnreadableSourceError(f"PDF text extraction failed: {exc}") from exc
    return plain_text_to_paragraphs(text or "")


# -----------------
# Markup
# -----------------


def _tag_to_lines(root) -> List[str]:
    for t in root.find_all(["script", "style", "noscript"]):
        t.decompose()
    for br in root.find_all(["br", "hr"]):
        br.replace_with("\n")
    for el in root.find_all(_BLOCK_TAGS):
        el.append("\n")

    text = root.get_text(" ")
    lines: List[str] = []
    for raw in text.replace("\r", "").split("\n"):
        line = normalize_whitespace(raw)
        if not line or is_boilerplate(line):
            continue
        lines.append(line)
    return lines


def html_to_lines(html: str) -> List[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    return _tag_to_lines(soup)


def content_region_lines(html: str) -> Optional[List[str]]:
    """Lines of the portal's main content container, or None when absent."""
    soup = BeautifulSoup(html or "", "html.parser")
    for element_id in CONTENT_REGION_IDS:
        region = soup.find(id=element_id)
        if region is not None:
            return _tag_to_lines(region)
    return None


def extract_line_sets(raw: RawContent) -> List[List[str]]:
    """Candidate line sequences for one source, most specific first."""
    if raw.kind == KIND_MARKUP:
        html = raw.data.decode("utf-8", errors="replace")
        full = html_to_lines(html)
        narrowed = content_region_lines(html)
        if narrowed is None:
            return [full]
        return [narrowed, full]
    if raw.kind == KIND_PDF:
        return [pdf_bytes_to_lines(raw.data)]
    if raw.kind in {KIND_DOCX, KIND_LEGACY}:
        return [word_bytes_to_lines(raw.data, file_name=raw.origin, legacy=raw.kind == KIND_LEGACY)]
    raise ValueError(f"Unknown content kind: {raw.kind}")
