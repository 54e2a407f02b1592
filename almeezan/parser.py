"""Article segmentation and defined-term extraction over normalized lines.

Headings are recognised in priority order: an explicit single-line heading
("Article (5)", "المادة ٣ - ..."), a heading split over two lines, then a bare
ordinal line ("First", "اولا"). Everything before the first heading is front
matter and is dropped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from almeezan.documents import is_boilerplate, normalize_whitespace
from almeezan.errors import EmptyExtractionError

log = logging.getLogger(__name__)

MAX_DEFINITIONS = 50
MIN_SYNTHETIC_CONTENT_CHARS = 40

_DIGITS = str.maketrans("٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹", "01234567890123456789")

ORDINAL_SECTION_MAP: Dict[str, str] = {
    "first": "1",
    "second": "2",
    "third": "3",
    "fourth": "4",
    "fifth": "5",
    "sixth": "6",
    "seventh": "7",
    "eighth": "8",
    "ninth": "9",
    "tenth": "10",
    "eleventh": "11",
    "twelfth": "12",
    "thirteenth": "13",
    "fourteenth": "14",
    "fifteenth": "15",
    "sixteenth": "16",
    "seventeenth": "17",
    "eighteenth": "18",
    "nineteenth": "19",
    "twentieth": "20",
    "twenty-first": "21",
    "twenty-second": "22",
    "twenty-third": "23",
    "twenty-fourth": "24",
    "twenty-fifth": "25",
    "twenty-sixth": "26",
    "twenty-seventh": "27",
    "twenty-eighth": "28",
    "twenty-ninth": "29",
    "thirtieth": "30",
    # Arabic ordinals used in decrees and announcements, after folding.
    "اولا": "1",
    "ثانيا": "2",
    "ثالثا": "3",
    "رابعا": "4",
    "خامسا": "5",
    "سادسا": "6",
    "سابعا": "7",
    "ثامنا": "8",
    "تاسعا": "9",
    "عاشرا": "10",
    "الحادي-عشر": "11",
    "الثاني-عشر": "12",
    "الثالث-عشر": "13",
    "الرابع-عشر": "14",
    "الخامس-عشر": "15",
    "السادس-عشر": "16",
    "السابع-عشر": "17",
    "الثامن-عشر": "18",
    "التاسع-عشر": "19",
    "العشرون": "20",
}

_ENGLISH_ARTICLE_RE = re.compile(
    r"^Article\s*\(?\s*([0-9]+[A-Za-z]?)\s*\)?(?:\s*[-–:.]\s*(.*)|\s+(.+))?(?:\s*\([^)]*\))?\s*$",
    re.IGNORECASE,
)
_ARABIC_ARTICLE_RE = re.compile(
    r"^(?:المادة|مادة)\s*\(?\s*([0-9]+)\s*\)?(?:\s*[-–:.]\s*(.*)|\s+(.+))?(?:\s*\([^)]*\))?\s*$"
)
_ENGLISH_KEYWORD_ONLY_RE = re.compile(r"^Article\s*\(?$", re.IGNORECASE)
_ARABIC_KEYWORD_ONLY_RE = re.compile(r"^(?:المادة|مادة)\s*\(?$")

_ORDINAL_WORDS = r"[A-Za-z\u0600-\u06FF]+(?:[-\s][A-Za-z\u0600-\u06FF]+)?"
_ORDINAL_WITH_TEXT_RE = re.compile(rf"^({_ORDINAL_WORDS})\s*[:.)\-،]\s*(.*)$")
_ORDINAL_STANDALONE_RE = re.compile(rf"^({_ORDINAL_WORDS})\s*[:.)\-،]?$")

_DEFINITION_SECTION_TITLE_RE = re.compile(r"definition|interpretation|تعريف|تعاريف", re.IGNORECASE)
_DEFINITION_MARKER_RE = re.compile(r"\bmeans\b", re.IGNORECASE)
_DEFINITION_RE = re.compile(
    r"(?:^|(?<=[.;])\s+)[\"“'‘]?([A-Za-z][A-Za-z0-9\-()/, ]{1,79})[\"”'’]?\s+means\s+([^.;\n]{10,500}\.?)",
    re.IGNORECASE | re.MULTILINE,
)


@dataclass(frozen=True)
class Provision:
    provision_ref: str
    section: str
    title: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "provision_ref": self.provision_ref,
            "section": self.section,
            "title": self.title,
            "content": self.content,
        }


@dataclass(frozen=True)
class Definition:
    term: str
    definition: str
    source_provision: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "term": self.term,
            "definition": self.definition,
            "source_provision": self.source_provision,
        }


@dataclass
class ParsedDocument:
    provisions: List[Provision] = field(default_factory=list)
    definitions: List[Definition] = field(default_factory=list)
    strategy: str = ""


@dataclass(frozen=True)
class HeadingMatch:
    section: str
    consumed: int = 1
    inline_text: str = ""


# -----------------
# Token normalisation
# -----------------


def normalize_digits(value: str) -> str:
    return (value or "").translate(_DIGITS)


def normalize_arabic_ordinal(value: str) -> str:
    out = re.sub(r"[\u064B-\u065F\u0670]", "", value or "")  # diacritics
    out = out.replace("\u0640", "")  # tatweel
    out = re.sub(r"[أإآٱ]", "ا", out)
    out = out.replace("ى", "ي").replace("ؤ", "و").replace("ئ", "ي")
    out = re.sub(r"[^\u0621-\u064A\s-]", " ", out)
    out = re.sub(r"\s+", " ", out).strip()
    return out.replace(" ", "-")


def parse_section_token(value: str) -> Optional[str]:
    """Map "(5)", "٣", "Twenty-First" or "أولاً" to a section label."""
    token = normalize_digits(normalize_whitespace(value))
    token = re.sub(r"[()]", "", token)
    token = re.sub(r"[.:،]", "", token).strip()

    numeric = re.match(r"^([0-9]+[A-Za-z]?)$", token)
    if numeric:
        return numeric.group(1)

    english_key = re.sub(r"[^a-z\s-]", "", token.lower())
    english_key = re.sub(r"\s+", " ", english_key).strip().replace(" ", "-")
    if english_key in ORDINAL_SECTION_MAP:
        return ORDINAL_SECTION_MAP[english_key]

    arabic_key = normalize_arabic_ordinal(token)
    if arabic_key and arabic_key in ORDINAL_SECTION_MAP:
        return ORDINAL_SECTION_MAP[arabic_key]

    return None


# -----------------
# Heading matchers
# -----------------


def _match_article_re(rx: re.Pattern, line: str) -> Optional[Tuple[str, str]]:
    compact = normalize_whitespace(normalize_digits(line))
    m = rx.match(compact)
    if not m:
        return None
    inline = normalize_whitespace(m.group(2) or m.group(3) or "")
    return m.group(1), inline


def match_explicit_heading(line: str) -> Optional[HeadingMatch]:
    for rx in (_ENGLISH_ARTICLE_RE, _ARABIC_ARTICLE_RE):
        hit = _match_article_re(rx, line)
        if hit:
            return HeadingMatch(section=hit[0], consumed=1, inline_text=hit[1])
    return None


def match_two_line_heading(line: str, next_line: str) -> Optional[HeadingMatch]:
    if not next_line:
        return None

    line_digits = normalize_digits(line)
    if _ENGLISH_KEYWORD_ONLY_RE.match(line_digits) or _ARABIC_KEYWORD_ONLY_RE.match(line_digits):
        token = parse_section_token(next_line)
        if token:
            return HeadingMatch(section=token, consumed=2)

    if len(line) <= 80 and len(next_line) <= 120:
        combined = match_explicit_heading(f"{line} {next_line}")
        if combined:
            return HeadingMatch(section=combined.section, consumed=2, inline_text=combined.inline_text)
    return None


def match_ordinal_heading(line: str) -> Optional[HeadingMatch]:
    compact = normalize_whitespace(normalize_digits(line))
    if not compact:
        return None

    m = _ORDINAL_WITH_TEXT_RE.match(compact)
    if m:
        section = parse_section_token(m.group(1))
        if section:
            return HeadingMatch(section=section, inline_text=normalize_whitespace(m.group(2)))

    m = _ORDINAL_STANDALONE_RE.match(compact)
    if m:
        section = parse_section_token(m.group(1))
        if section:
            return HeadingMatch(section=section)
    return None


def match_heading(lines: Sequence[str], index: int) -> Optional[HeadingMatch]:
    line = normalize_whitespace(lines[index] if index < len(lines) else "")
    if not line:
        return None
    next_line = normalize_whitespace(lines[index + 1] if index + 1 < len(lines) else "")

    explicit = match_explicit_heading(line)
    if explicit:
        return explicit

    two_line = match_two_line_heading(line, next_line)
    if two_line:
        return two_line

    ordinal = match_ordinal_heading(line)
    if ordinal:
        return ordinal

    if next_line and len(line) <= 80 and len(next_line) <= 200:
        combined = match_ordinal_heading(f"{line} {next_line}")
        if combined:
            return HeadingMatch(section=combined.section, consumed=2, inline_text=combined.inline_text)
    return None


# -----------------
# Segmentation
# -----------------


def make_provision_ref(section: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (section or "").lower()).strip("-")
    return f"art{slug or (section or '').lower()}"


def make_provision(section: str, content: str) -> Provision:
    return Provision(
        provision_ref=make_provision_ref(section),
        section=section,
        title=f"Article ({section})",
        content=content,
    )


def segment_provisions(lines: Sequence[str]) -> List[Provision]:
    """Run the SCANNING / IN_SECTION pass over `lines`."""
    provisions: List[Provision] = []
    section: Optional[str] = None  # None while scanning front matter
    buffer: List[str] = []

    def flush() -> None:
        if section is None:
            return
        content = re.sub(r"\n{3,}", "\n\n", "\n".join(buffer)).strip()
        if content:
            provisions.append(make_provision(section, content))

    i = 0
    while i < len(lines):
        heading = match_heading(lines, i)
        if heading:
            flush()
            section = heading.section
            buffer = [heading.inline_text] if heading.inline_text else []
            i += heading.consumed
            continue
        if section is not None:
            buffer.append(lines[i])
        i += 1

    flush()
    return provisions


def dedupe_provisions(provisions: Sequence[Provision]) -> List[Provision]:
    by_ref: Dict[str, Provision] = {}
    for provision in provisions:
        existing = by_ref.get(provision.provision_ref)
        if existing is None or len(provision.content) > len(existing.content):
            by_ref[provision.provision_ref] = provision
    return list(by_ref.values())


def is_definition_candidate(provision: Provision) -> bool:
    return (
        provision.section == "1"
        or bool(_DEFINITION_SECTION_TITLE_RE.search(provision.title))
        or bool(_DEFINITION_MARKER_RE.search(provision.content))
    )


def extract_definitions(provisions: Sequence[Provision]) -> List[Definition]:
    definitions: List[Definition] = []
    seen: set[str] = set()

    for provision in provisions:
        if not is_definition_candidate(provision):
            continue
        for m in _DEFINITION_RE.finditer(provision.content):
            term = normalize_whitespace(m.group(1))
            meaning = normalize_whitespace(m.group(2))
            if len(term) < 2 or len(meaning) < 10:
                continue
            key = term.lower()
            if key in seen:
                continue
            seen.add(key)
            definitions.append(Definition(term=term, definition=meaning, source_provision=provision.provision_ref))
            if len(definitions) >= MAX_DEFINITIONS:
                return definitions

    return definitions


def parse_lines(lines: Sequence[str]) -> ParsedDocument:
    provisions = dedupe_provisions(segment_provisions(lines))
    return ParsedDocument(provisions=provisions, definitions=extract_definitions(provisions))


def synthetic_document(lines: Sequence[str]) -> ParsedDocument:
    """Single art1 provision over every non-boilerplate line."""
    meaningful = [normalize_whitespace(x) for x in lines]
    meaningful = [x for x in meaningful if x and not is_boilerplate(x)]
    content = re.sub(r"\n{3,}", "\n\n", "\n".join(meaningful)).strip()
    if len(content) < MIN_SYNTHETIC_CONTENT_CHARS:
        return ParsedDocument()
    return ParsedDocument(provisions=[make_provision("1", content)])


def parse_line_sets(line_sets: Sequence[Sequence[str]]) -> ParsedDocument:
    """Parse the most specific extraction that yields provisions.

    Heading passes run over every extraction before the synthetic single
    provision is considered. Raises EmptyExtractionError when nothing yields.
    """
    strategies: List[Tuple[str, Callable[[], ParsedDocument]]] = []
    for n, lines in enumerate(line_sets):
        strategies.append((f"headings[{n}]", lambda lines=lines: parse_lines(lines)))
    for n, lines in enumerate(line_sets):
        strategies.append((f"synthetic[{n}]", lambda lines=lines: synthetic_document(lines)))

    for name, strategy in strategies:
        parsed = strategy()
        if parsed.provisions:
            parsed.strategy = name
            log.debug("parse strategy %s yielded %d provisions", name, len(parsed.provisions))
            return parsed

    raise EmptyExtractionError("no article-level provisions found")
