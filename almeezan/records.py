from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from almeezan.catalogue import (
    CatalogEntry,
    law_article_url,
    law_page_url,
    law_view_word_url,
)
from almeezan.documents import (
    KIND_DOCX,
    KIND_LEGACY,
    KIND_MARKUP,
    KIND_PDF,
    RawContent,
    extract_line_sets,
    normalize_whitespace,
)
from almeezan.errors import EmptyExtractionError, FetchError, IngestError, truncate_error
from almeezan.fetcher import HttpClient, endpoint_name, is_challenge_bytes
from almeezan.parser import (
    Definition,
    ParsedDocument,
    Provision,
    extract_definitions,
    normalize_digits,
    parse_line_sets,
)
from almeezan.storage import SourceCache
from almeezan.targets import ARABIC_FALLBACK_BY_DOCX, FIXED_TARGETS_BY_DOCX

log = logging.getLogger(__name__)

MAX_ID_SLUG_CHARS = 72
MAX_SHORT_NAME_CHARS = 120

ENGLISH_DOCX_DESCRIPTION = (
    "Official legislation text retrieved from Al Meezan Legal Portal (English laws list source)."
)
ENGLISH_PDF_DESCRIPTION = (
    "Official legislation text retrieved from Al Meezan Legal Portal (English laws list PDF source)."
)
ARABIC_FALLBACK_DESCRIPTION = (
    "Official legislation text retrieved from Al Meezan LawViewWord Arabic source "
    "(English translation unavailable)."
)
LAW_VIEW_WORD_DESCRIPTION = "Official legislation text retrieved from Al Meezan LawViewWord Arabic source."
LAW_ARTICLES_DESCRIPTION = (
    "Official legislation text retrieved from Al Meezan LawArticles Arabic source (LawViewWord unavailable)."
)
METADATA_FETCH_FAILED = "Official Al Meezan metadata retained. Text fetch failed: "
METADATA_NO_TEXT = "Official Al Meezan metadata retained. No article-level text found: "

_ARTICLE_LABEL_AR_RE = re.compile(r"^المادة\s+([0-9]+(?:\s+مكرر)?)")
_ARTICLE_LABEL_EN_RE = re.compile(r"^Article\s+([0-9]+[A-Za-z]?)", re.IGNORECASE)


# -----------------
# Targets
# -----------------


@dataclass(frozen=True)
class TargetConfig:
    stable_id: str
    display_name: str
    source_file_name: str = ""


def normalize_file_key(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip().lower()


def slugify(value: str) -> str:
    out = unicodedata.normalize("NFKD", value or "")
    out = "".join(ch for ch in out if not unicodedata.combining(ch))
    out = out.lower().replace("&", " and ")
    out = re.sub(r"['’`]", "", out)
    out = re.sub(r"[^a-z0-9]+", "-", out)
    return out.strip("-")


def short_name_from_title(title: str) -> str:
    compact = normalize_whitespace(title)
    if len(compact) <= MAX_SHORT_NAME_CHARS:
        return compact
    return f"{compact[: MAX_SHORT_NAME_CHARS - 3].strip()}..."


def _auto_id(entry: CatalogEntry, ordinal: int, used: set[str]) -> str:
    stem = Path(entry.locators.document_file_name or entry.law_id).stem
    slug = slugify(stem)
    if not slug or slug.isdigit():
        slug = slugify(entry.title_en or entry.title or f"law-{ordinal + 1}")
    if not slug:
        slug = f"law-{ordinal + 1}"
    if len(slug) > MAX_ID_SLUG_CHARS:
        slug = slug[:MAX_ID_SLUG_CHARS].rstrip("-")

    candidate = f"qa-{slug}"
    suffix = 2
    while candidate in used:
        candidate = f"qa-{slug}-{suffix}"
        suffix += 1
    return candidate


def build_targets(entries: Sequence[CatalogEntry]) -> List[TargetConfig]:
    """Stable ids for the English corpus, in catalog order."""
    fixed = {normalize_file_key(name): (name, value) for name, value in FIXED_TARGETS_BY_DOCX.items()}
    used: set[str] = set()
    targets: List[TargetConfig] = []

    for ordinal, entry in enumerate(entries):
        file_name = entry.locators.document_file_name
        hit = fixed.get(normalize_file_key(file_name))
        if hit and hit[1][0] not in used:
            stable_id, display_name = hit[1]
        else:
            stable_id = _auto_id(entry, ordinal, used)
            display_name = short_name_from_title(entry.title_en or entry.title or file_name)
        used.add(stable_id)
        targets.append(TargetConfig(stable_id=stable_id, display_name=display_name, source_file_name=file_name))

    return targets


def law_target(entry: CatalogEntry) -> TargetConfig:
    return TargetConfig(
        stable_id=f"qa-law-{entry.law_id}",
        display_name=short_name_from_title(entry.title_en or entry.title),
    )


def arabic_fallback_for(file_name: str) -> Optional[Tuple[str, str]]:
    key = normalize_file_key(file_name)
    for raw_name, fallback in ARABIC_FALLBACK_BY_DOCX.items():
        if normalize_file_key(raw_name) == key:
            return fallback
    return None


# -----------------
# Records
# -----------------


@dataclass
class Record:
    id: str
    title: str
    title_english: str
    short_name: str
    status: str
    source_url: str
    source_description: str
    provisions: List[Provision] = field(default_factory=list)
    definitions: List[Definition] = field(default_factory=list)
    fallback_used: bool = False
    failures: List[str] = field(default_factory=list)

    @property
    def metadata_only(self) -> bool:
        return not self.provisions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "title_english": self.title_english,
            "short_name": self.short_name,
            "status": self.status,
            "source_url": self.source_url,
            "source_description": self.source_description,
            "provisions": [p.to_dict() for p in self.provisions],
            "definitions": [d.to_dict() for d in self.definitions],
        }


@dataclass(frozen=True)
class SourceStrategy:
    name: str
    url: str
    description: str
    load: Callable[[], ParsedDocument]


class SourceLoader:
    """Fetches source bytes through the on-disk cache.

    `client` may be None when the cache is offline; a cache miss then
    surfaces as FileNotFoundError from the cache itself.
    """

    def __init__(self, cache: SourceCache, client: Optional[HttpClient] = None):
        self.cache = cache
        self.client = client

    def _fetcher(self, url: str, *, binary: bool) -> Callable[[], bytes]:
        def fetch() -> bytes:
            if self.client is None:
                raise FetchError(f"Fetching disabled for {url}", url=url)
            if binary:
                return self.client.fetch_binary(url)
            return self.client.fetch_text(url).encode("utf-8")

        return fetch

    def load_bytes(self, url: str, cache_path: Path, *, binary: bool = True) -> bytes:
        endpoint = endpoint_name(url)
        return self.cache.load(
            cache_path,
            self._fetcher(url, binary=binary),
            reject=lambda data: is_challenge_bytes(data, endpoint),
        )

    def load_text(self, url: str, cache_path: Path) -> str:
        return self.load_bytes(url, cache_path, binary=False).decode("utf-8", errors="replace")


def parse_raw(raw: RawContent) -> ParsedDocument:
    return parse_line_sets(extract_line_sets(raw))


def parse_article_label(label: str) -> Optional[str]:
    clean = normalize_digits(normalize_whitespace(label))
    if not clean:
        return None
    m = _ARTICLE_LABEL_AR_RE.match(clean)
    if m:
        return normalize_whitespace(m.group(1))
    m = _ARTICLE_LABEL_EN_RE.match(clean)
    if m:
        return m.group(1)
    return None


def extract_law_article_refs(law_page_html: str, law_id: str) -> List[Tuple[str, Optional[str]]]:
    """(article_id, section) pairs linked from a LawPage, in page order."""
    href_re = re.compile(
        rf"LawArticles\.aspx\?LawArticleID=(\d+)&LawId={re.escape(law_id)}(?:&|$)", re.IGNORECASE
    )
    soup = BeautifulSoup(law_page_html or "", "html.parser")
    refs: List[Tuple[str, Optional[str]]] = []
    seen: set[str] = set()
    for a in soup.find_all("a", href=True):
        m = href_re.search(a.get("href") or "")
        if not m or m.group(1) in seen:
            continue
        seen.add(m.group(1))
        refs.append((m.group(1), parse_article_label(a.get_text(" "))))
    return refs


def load_law_articles(loader: SourceLoader, law_id: str, language: str = "ar") -> ParsedDocument:
    page_html = loader.load_text(
        law_page_url(law_id, language),
        loader.cache.path_for("lawpage", language, f"{law_id}-{language}.html"),
    )
    refs = extract_law_article_refs(page_html, law_id)
    if not refs:
        raise EmptyExtractionError("LawPage lists no articles")

    provisions: List[Provision] = []
    for index, (article_id, label_section) in enumerate(refs):
        url = law_article_url(law_id, article_id, language)
        html = loader.load_bytes(
            url,
            loader.cache.path_for("lawarticles", language, f"{law_id}-{article_id}-{language}.html"),
            binary=False,
        )
        try:
            parsed = parse_raw(RawContent(html, KIND_MARKUP, origin=url))
        except EmptyExtractionError:
            log.debug("article %s of law %s has no text", article_id, law_id)
            continue

        first = parsed.provisions[0]
        section = label_section or first.section or str(index + 1)
        provisions.append(
            Provision(
                provision_ref=f"art{article_id}",
                section=section,
                title=f"Article ({section})",
                content=first.content,
            )
        )

    if not provisions:
        raise EmptyExtractionError("no article-level provisions found on LawArticles pages")
    return ParsedDocument(provisions=provisions, definitions=extract_definitions(provisions))


def _law_view_word_strategy(
    loader: SourceLoader, law_id: str, language: str, description: str
) -> SourceStrategy:
    url = law_view_word_url(law_id, language)

    def load() -> ParsedDocument:
        html = loader.load_bytes(
            url,
            loader.cache.path_for("lawviewword", language, f"{law_id}-{language}.html"),
            binary=False,
        )
        return parse_raw(RawContent(html, KIND_MARKUP, origin=url))

    return SourceStrategy(name="lawviewword", url=url, description=description, load=load)


def english_strategies(entry: CatalogEntry, loader: SourceLoader) -> List[SourceStrategy]:
    """DOCX, then the listed PDF, then a configured Arabic rendering."""
    locators = entry.locators
    file_name = locators.document_file_name
    strategies: List[SourceStrategy] = []

    def load_document() -> ParsedDocument:
        data = loader.load_bytes(locators.document_url, loader.cache.path_for("docx", file_name))
        kind = KIND_LEGACY if file_name.lower().endswith(".doc") else KIND_DOCX
        return parse_raw(RawContent(data, kind, origin=file_name))

    strategies.append(
        SourceStrategy(
            name="document",
            url=locators.document_url,
            description=ENGLISH_DOCX_DESCRIPTION,
            load=load_document,
        )
    )

    if locators.pdf_url:
        pdf_name = locators.pdf_url.rsplit("/", 1)[-1] or f"{Path(file_name).stem}.pdf"

        def load_pdf() -> ParsedDocument:
            data = loader.load_bytes(locators.pdf_url, loader.cache.path_for("pdf", pdf_name))
            return parse_raw(RawContent(data, KIND_PDF, origin=pdf_name))

        strategies.append(
            SourceStrategy(name="pdf", url=locators.pdf_url, description=ENGLISH_PDF_DESCRIPTION, load=load_pdf)
        )

    fallback = arabic_fallback_for(file_name)
    if fallback:
        law_id, language = fallback
        strategies.append(_law_view_word_strategy(loader, law_id, language, ARABIC_FALLBACK_DESCRIPTION))

    return strategies


def full_strategies(entry: CatalogEntry, loader: SourceLoader, language: str = "ar") -> List[SourceStrategy]:
    """LawViewWord, then the per-article LawArticles pages."""
    return [
        _law_view_word_strategy(loader, entry.law_id, language, LAW_VIEW_WORD_DESCRIPTION),
        SourceStrategy(
            name="lawarticles",
            url=law_page_url(entry.law_id, language),
            description=LAW_ARTICLES_DESCRIPTION,
            load=lambda: load_law_articles(loader, entry.law_id, language),
        ),
    ]


def metadata_only_description(failures: Iterable[Tuple[str, Exception]]) -> str:
    failures = list(failures)
    reasons = " | ".join(f"{name}: {truncate_error(str(exc), 300)}" for name, exc in failures)
    if any(not isinstance(exc, EmptyExtractionError) for _, exc in failures):
        return METADATA_FETCH_FAILED + reasons
    return METADATA_NO_TEXT + (reasons or "no sources available")


def build_record(
    entry: CatalogEntry,
    target: TargetConfig,
    strategies: Sequence[SourceStrategy],
) -> Record:
    """Try each source in order; a record is returned even when all fail."""
    record = Record(
        id=target.stable_id,
        title=entry.title_ar or entry.title_en or entry.title,
        title_english=entry.title_en or entry.title,
        short_name=target.display_name,
        status=entry.status,
        source_url=strategies[0].url if strategies else entry.locators.document_url,
        source_description="",
    )

    failures: List[Tuple[str, Exception]] = []
    for n, strategy in enumerate(strategies):
        try:
            parsed = strategy.load()
        except (IngestError, OSError) as exc:
            log.debug("%s: %s source failed: %s", target.stable_id, strategy.name, exc)
            failures.append((strategy.name, exc))
            continue

        record.provisions = list(parsed.provisions)
        record.definitions = list(parsed.definitions)
        record.source_url = strategy.url
        record.source_description = strategy.description
        record.fallback_used = n > 0
        record.failures = [f"{name}: {exc}" for name, exc in failures]
        return record

    record.source_description = metadata_only_description(failures)
    record.failures = [f"{name}: {exc}" for name, exc in failures]
    return record
