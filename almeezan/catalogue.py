from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields, replace
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup

from almeezan.documents import normalize_whitespace
from almeezan.errors import CorpusDiscoveryError, IngestError, truncate_error
from almeezan.fetcher import PORTAL_ORIGIN, to_absolute_url

log = logging.getLogger(__name__)

ENGLISH_INDEX_URL = f"{PORTAL_ORIGIN}/EnglishLawsList.aspx"
LAWS_BY_YEAR_URL = f"{PORTAL_ORIGIN}/LawsByYear.aspx"

_ARABIC_CHAR_RE = re.compile(r"[\u0600-\u06FF]")
_YEAR_IN_TITLE_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
_YEAR_HREF_RE = re.compile(r"[?&]year=(\d{4})\b", re.IGNORECASE)
_PAGE_HREF_RE = re.compile(r"(?:[?&]page=|Page\$)(\d+)", re.IGNORECASE)
_LAW_PAGE_HREF_RE = re.compile(r"LawPage\.aspx\?id=(\d+)", re.IGNORECASE)
# Grid rows render each law title as <a id="..._lnkLaw_N"> (or hlLaw on older pages).
_ENTRY_ANCHOR_ID_RE = re.compile(r"(?:lnk|hl)Law", re.IGNORECASE)

_REPEALED_RE = re.compile(r"\brepealed\b|ملغى|ملغي|ملغاة", re.IGNORECASE)
_AMENDED_RE = re.compile(r"\bamended\b|معدل", re.IGNORECASE)


def law_view_word_url(law_id: str, language: str = "ar") -> str:
    return f"{PORTAL_ORIGIN}/LawViewWord.aspx?LawID={law_id}&mode=DOC&language={language}"


def law_page_url(law_id: str, language: str = "ar") -> str:
    return f"{PORTAL_ORIGIN}/LawPage.aspx?id={law_id}&language={language}"


def law_article_url(law_id: str, article_id: str, language: str = "ar") -> str:
    return f"{PORTAL_ORIGIN}/LawArticles.aspx?LawArticleID={article_id}&LawId={law_id}&language={language}"


def listing_page_url(year: int, page: int, language: str = "ar", base_url: str = LAWS_BY_YEAR_URL) -> str:
    return f"{base_url}?year={year}&language={language}&page={page}"


@dataclass(frozen=True)
class SourceLocators:
    document_url: str = ""
    document_file_name: str = ""
    pdf_url: str = ""
    page_url: str = ""


@dataclass(frozen=True)
class CatalogEntry:
    law_id: str
    raw_title: str
    title_en: str
    title_ar: str
    title: str
    locators: SourceLocators = field(default_factory=SourceLocators)
    discovery_year: Optional[int] = None
    status: str = "in_force"

    @property
    def numeric_id(self) -> int:
        m = re.match(r"^\d+$", self.law_id or "")
        return int(self.law_id) if m else 0


def split_bilingual_title(raw_title: str) -> Tuple[str, str, str]:
    """Return (title_en, title_ar, title) split at the first Arabic character."""
    cleaned = normalize_whitespace(raw_title)
    m = _ARABIC_CHAR_RE.search(cleaned)
    if not m:
        return cleaned, "", cleaned

    title_en = cleaned[: m.start()].strip()
    title_ar = cleaned[m.start():].strip()
    return (title_en or title_ar), title_ar, (title_ar or title_en)


def status_from_text(text: str) -> str:
    if _REPEALED_RE.search(text or ""):
        return "repealed"
    if _AMENDED_RE.search(text or ""):
        return "amended"
    return "in_force"


def year_from_title(title: str) -> Optional[int]:
    m = _YEAR_IN_TITLE_RE.search(title or "")
    return int(m.group(1)) if m else None


def merge_entries(existing: CatalogEntry, incoming: CatalogEntry) -> CatalogEntry:
    """Keep the longer title and the earliest discovery year."""
    base = incoming if len(incoming.raw_title) > len(existing.raw_title) else existing
    other = existing if base is incoming else incoming
    years = [y for y in (existing.discovery_year, incoming.discovery_year) if y is not None]
    locators = SourceLocators(
        **{f.name: getattr(base.locators, f.name) or getattr(other.locators, f.name) for f in fields(SourceLocators)}
    )
    return replace(base, discovery_year=min(years) if years else None, locators=locators)


def merge_into(catalog: Dict[str, CatalogEntry], entries: Iterable[CatalogEntry]) -> None:
    for entry in entries:
        existing = catalog.get(entry.law_id)
        catalog[entry.law_id] = entry if existing is None else merge_entries(existing, entry)


# -----------------
# Single index (EnglishLawsList.aspx)
# -----------------


def _clean_href(href: str) -> str:
    return re.sub(r"[\r\n\t]", "", href or "").strip()


def _href_path(href: str) -> str:
    return href.split("?", 1)[0].split("#", 1)[0].lower()


def parse_english_laws_list(html: str) -> List[CatalogEntry]:
    soup = BeautifulSoup(html or "", "html.parser")
    catalog: Dict[str, CatalogEntry] = {}

    for tr in soup.find_all("tr"):
        cells = tr.find_all("td", recursive=False)
        if len(cells) < 2:
            continue
        # Layout rows wrap the whole grid; only leaf rows are laws.
        if tr.find("table") is not None:
            continue

        document_href = ""
        pdf_href = ""
        links = [a for cell in cells for a in cell.find_all("a", href=True)]
        for a in links:
            href = _clean_href(a.get("href"))
            path = _href_path(href)
            if path.endswith(".docx") or path.endswith(".doc"):
                document_href = document_href or href
            elif path.endswith(".pdf"):
                pdf_href = pdf_href or href
        if not document_href:
            continue

        raw_title = normalize_whitespace(cells[0].get_text(" "))
        if not raw_title:
            continue

        title_en, title_ar, title = split_bilingual_title(raw_title)
        file_name = unquote(urlparse(document_href).path.rsplit("/", 1)[-1])
        entry = CatalogEntry(
            law_id=file_name,
            raw_title=raw_title,
            title_en=title_en,
            title_ar=title_ar,
            title=title,
            locators=SourceLocators(
                document_url=to_absolute_url(document_href),
                document_file_name=file_name,
                pdf_url=to_absolute_url(pdf_href) if pdf_href else "",
            ),
            discovery_year=year_from_title(raw_title),
            status=status_from_text(raw_title),
        )
        merge_into(catalog, [entry])

    return list(catalog.values())


# -----------------
# Paginated listing (LawsByYear.aspx)
# -----------------


def default_candidate_years(today: Optional[date] = None) -> List[int]:
    this_year = (today or date.today()).year
    out: List[int] = []
    for y in (this_year, this_year - 1, 2020, 2015):
        if y not in out:
            out.append(y)
    return out


def parse_year_links(html: str) -> List[int]:
    soup = BeautifulSoup(html or "", "html.parser")
    containers = soup.select('[id*="Year"], [id*="year"], .sidebar')
    anchors = [a for c in containers for a in c.find_all("a", href=True)]
    if not anchors:
        anchors = soup.find_all("a", href=True)

    years: set[int] = set()
    for a in anchors:
        m = _YEAR_HREF_RE.search(a.get("href") or "")
        if m and 1900 <= int(m.group(1)) <= 2100:
            years.add(int(m.group(1)))
    return sorted(years)


def parse_max_page(html: str) -> int:
    soup = BeautifulSoup(html or "", "html.parser")
    max_page = 1
    for a in soup.find_all("a", href=True):
        for m in _PAGE_HREF_RE.finditer(a.get("href") or ""):
            max_page = max(max_page, int(m.group(1)))
    return max_page


def parse_listing_entries(html: str, year: int, language: str = "ar") -> List[CatalogEntry]:
    soup = BeautifulSoup(html or "", "html.parser")
    entries: List[CatalogEntry] = []
    for a in soup.find_all("a", href=True):
        m = _LAW_PAGE_HREF_RE.search(a.get("href") or "")
        if not m:
            continue
        if not _ENTRY_ANCHOR_ID_RE.search(a.get("id") or ""):
            continue

        law_id = m.group(1)
        raw_title = normalize_whitespace(a.get_text(" "))
        if not raw_title:
            continue
        row = a.find_parent("tr")
        row_text = normalize_whitespace(row.get_text(" ")) if row is not None else raw_title

        title_en, title_ar, title = split_bilingual_title(raw_title)
        entries.append(
            CatalogEntry(
                law_id=law_id,
                raw_title=raw_title,
                title_en=title_en,
                title_ar=title_ar,
                title=title,
                locators=SourceLocators(
                    document_url=law_view_word_url(law_id, language),
                    page_url=law_page_url(law_id, language),
                ),
                discovery_year=year,
                status=status_from_text(row_text),
            )
        )
    return entries


class LawsByYearCrawler:
    """Crawl every year partition of the listing with a bounded worker pool.

    `load_page(year, page)` returns listing HTML; it is expected to go through
    the source cache and the shared HttpClient.
    """

    def __init__(
        self,
        load_page: Callable[[int, int], str],
        *,
        workers: int = 2,
        candidate_years: Optional[Sequence[int]] = None,
        from_law_id: Optional[int] = None,
        language: str = "ar",
    ):
        self.load_page = load_page
        self.workers = max(1, int(workers))
        self.candidate_years = list(candidate_years or default_candidate_years())
        self.from_law_id = from_law_id
        self.language = language
        self.failures: List[str] = []

    def discover_years(self) -> List[int]:
        for year in self.candidate_years:
            try:
                html = self.load_page(year, 1)
            except (IngestError, OSError) as exc:
                log.warning("Year probe %s failed: %s", year, exc)
                continue
            years = parse_year_links(html)
            if years:
                log.info("Discovered %d year partitions via probe year %s", len(years), year)
                return years
        raise CorpusDiscoveryError(
            f"No year partitions found (probed {', '.join(str(y) for y in self.candidate_years)})"
        )

    def _load_safely(self, key: Tuple[int, int]) -> Optional[str]:
        year, page = key
        try:
            return self.load_page(year, page)
        except (IngestError, OSError) as exc:
            err = CorpusDiscoveryError(f"listing {year} page {page}: {exc}")
            log.warning("%s", err)
            self.failures.append(truncate_error(str(err)))
            return None

    def _load_all(self, keys: List[Tuple[int, int]]) -> List[Tuple[Tuple[int, int], Optional[str]]]:
        if not keys:
            return []
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            pages = list(pool.map(self._load_safely, keys))
        return list(zip(keys, pages))

    def crawl(self) -> List[CatalogEntry]:
        years = self.discover_years()
        catalog: Dict[str, CatalogEntry] = {}

        remaining: List[Tuple[int, int]] = []
        for (year, _page), html in self._load_all([(y, 1) for y in years]):
            if html is None:
                continue
            merge_into(catalog, parse_listing_entries(html, year, self.language))
            remaining.extend((year, p) for p in range(2, parse_max_page(html) + 1))

        for (year, _page), html in self._load_all(remaining):
            if html is None:
                continue
            merge_into(catalog, parse_listing_entries(html, year, self.language))

        entries = sorted(catalog.values(), key=lambda e: (e.numeric_id, e.law_id))
        if self.from_law_id is not None:
            entries = [e for e in entries if e.numeric_id >= self.from_law_id]
        log.info("Crawled %d listing pages, %d unique laws", len(years) + len(remaining), len(entries))
        return entries
