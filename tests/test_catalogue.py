from __future__ import annotations

from datetime import date

import pytest

from almeezan.catalogue import (
    CatalogEntry,
    LawsByYearCrawler,
    default_candidate_years,
    merge_entries,
    parse_english_laws_list,
    parse_listing_entries,
    parse_max_page,
    parse_year_links,
    split_bilingual_title,
    status_from_text,
)
from almeezan.errors import CorpusDiscoveryError, FetchError

ENGLISH_INDEX_HTML = """
<html><body><table id="gvLaws">
<tr><th>Title</th><th>Word</th><th>PDF</th></tr>
<tr>
  <td>Law No. (13) of 2016 on Personal Data Privacy Protection قانون رقم (13) لسنة 2016</td>
  <td><a href="/Upload/EnglishLaws/132016.docx">Word</a></td>
  <td><a href="/Upload/EnglishLaws/132016.pdf">PDF</a></td>
</tr>
<tr>
  <td>Law No. 11 of 2004 Promulgating the Penal Code</td>
  <td><a href="Upload/EnglishLaws/Law%20No.%2011%20of%202004%20Promulgating%20the%20Penal%20Code.docx">Word</a></td>
  <td></td>
</tr>
<tr>
  <td>A law with only a PDF</td>
  <td><a href="/Upload/EnglishLaws/pdfonly.pdf">PDF</a></td>
</tr>
<tr>
  <td>Law No. (13) of 2016 on Personal Data Privacy Protection (Amended) قانون رقم (13) لسنة 2016</td>
  <td><a href="/Upload/EnglishLaws/132016.docx">Word</a></td>
</tr>
</table></body></html>
"""


def listing_html(entries, years=(), max_page=None):
    sidebar = "".join(f'<li><a href="LawsByYear.aspx?year={y}&language=ar">{y}</a></li>' for y in years)
    rows = "".join(
        f'<tr><td><a id="ctl00_grid_lnkLaw_{n}" href="LawPage.aspx?id={law_id}&language=ar">{title}</a></td>'
        f"<td>{note}</td></tr>"
        for n, (law_id, title, note) in enumerate(entries)
    )
    pager = ""
    if max_page:
        pager = "".join(
            f"<a href=\"javascript:__doPostBack('ctl00$grid','Page${p}')\">{p}</a>" for p in range(2, max_page + 1)
        )
    return (
        f'<html><body><ul id="ctl00_YearsList">{sidebar}</ul>'
        f'<a id="ctl00_recent" href="LawPage.aspx?id=99999&language=ar">Recent</a>'
        f"<table>{rows}</table>{pager}</body></html>"
    )


def entry(law_id, title, year):
    return CatalogEntry(law_id=law_id, raw_title=title, title_en=title, title_ar="", title=title, discovery_year=year)


def test_split_bilingual_title():
    assert split_bilingual_title("Law No. 1 of 2020  قانون رقم 1") == ("Law No. 1 of 2020", "قانون رقم 1", "قانون رقم 1")
    assert split_bilingual_title("Penal Code") == ("Penal Code", "", "Penal Code")
    assert split_bilingual_title("قانون رقم 5") == ("قانون رقم 5", "قانون رقم 5", "قانون رقم 5")


def test_status_markers():
    assert status_from_text("Law 5 (Repealed)") == "repealed"
    assert status_from_text("قانون رقم 5 معدل") == "amended"
    assert status_from_text("Law 5") == "in_force"


def test_merge_keeps_longer_title_and_earliest_year():
    merged = merge_entries(entry("42", "Law A", 2019), entry("42", "Law A (Amended)", 2021))
    assert merged.raw_title == "Law A (Amended)"
    assert merged.discovery_year == 2019

    merged = merge_entries(entry("42", "Law A (Amended)", 2021), entry("42", "Law A", 2019))
    assert merged.raw_title == "Law A (Amended)"
    assert merged.discovery_year == 2019


def test_parse_english_laws_list():
    entries = parse_english_laws_list(ENGLISH_INDEX_HTML)
    assert [e.law_id for e in entries] == [
        "132016.docx",
        "Law No. 11 of 2004 Promulgating the Penal Code.docx",
    ]

    pdp, penal = entries
    assert pdp.title_en == "Law No. (13) of 2016 on Personal Data Privacy Protection (Amended)"
    assert pdp.title_ar == "قانون رقم (13) لسنة 2016"
    assert pdp.status == "amended"
    assert pdp.discovery_year == 2016
    assert pdp.locators.document_url == "https://www.almeezan.qa/Upload/EnglishLaws/132016.docx"
    assert pdp.locators.pdf_url == "https://www.almeezan.qa/Upload/EnglishLaws/132016.pdf"

    assert penal.locators.document_file_name == "Law No. 11 of 2004 Promulgating the Penal Code.docx"
    assert penal.locators.pdf_url == ""
    assert penal.discovery_year == 2004
    assert penal.status == "in_force"


NESTED_INDEX_HTML = """
<html><body><table id="layout"><tr>
  <td><a href="/Upload/EnglishLaws/banner.pdf">Guide</a></td>
  <td>
    <table id="gvLaws">
      <tr><td>Law A قانون أ</td><td><a href="/Upload/EnglishLaws/a.pdf">pdf</a></td><td><a href="/Upload/EnglishLaws/a.docx">docx</a></td></tr>
      <tr><td>Law B قانون ب</td><td><a href="/Upload/EnglishLaws/b.pdf">pdf</a></td><td><a href="/Upload/EnglishLaws/b.docx">docx</a></td></tr>
    </table>
  </td>
</tr></table></body></html>
"""


def test_layout_table_around_grid_is_ignored():
    entries = parse_english_laws_list(NESTED_INDEX_HTML)
    assert [(e.law_id, e.title_en, e.title_ar) for e in entries] == [
        ("a.docx", "Law A", "قانون أ"),
        ("b.docx", "Law B", "قانون ب"),
    ]
    assert entries[0].locators.pdf_url.endswith("/a.pdf")


def test_listing_page_helpers():
    html = listing_html(
        [("7797", "قانون رقم (16) لسنة 2018", ""), ("7798", "قانون رقم (17) لسنة 2018", "ملغى")],
        years=(2018, 2017),
        max_page=4,
    )
    assert parse_year_links(html) == [2017, 2018]
    assert parse_max_page(html) == 4
    assert parse_max_page("<html></html>") == 1

    entries = parse_listing_entries(html, 2018)
    assert [e.law_id for e in entries] == ["7797", "7798"]
    assert entries[0].locators.document_url.endswith("LawViewWord.aspx?LawID=7797&mode=DOC&language=ar")
    assert entries[1].status == "repealed"
    assert all(e.discovery_year == 2018 for e in entries)


def test_year_links_fall_back_to_whole_page():
    html = '<html><body><a href="/LawsByYear.aspx?year=2001">2001</a></body></html>'
    assert parse_year_links(html) == [2001]


def test_default_candidate_years():
    assert default_candidate_years(date(2026, 3, 1)) == [2026, 2025, 2020, 2015]
    assert default_candidate_years(date(2021, 3, 1)) == [2021, 2020, 2015]


def make_loader(pages, calls):
    def load(year, page):
        calls.append((year, page))
        html = pages.get((year, page))
        if html is None:
            raise FetchError(f"HTTP 500 for {year}/{page}")
        return html

    return load


def test_crawl_merges_years_and_skips_failed_pages():
    years = (2020, 2021)
    pages = {
        (2020, 1): listing_html([("42", "Law A", ""), ("7", "Law Seven", "")], years=years),
        (2021, 1): listing_html([("100", "Law Hundred", "")], years=years, max_page=3),
        (2021, 2): listing_html([("42", "Law A (Amended)", "")], years=years),
        # (2021, 3) fails
    }
    calls = []
    crawler = LawsByYearCrawler(make_loader(pages, calls), workers=3, candidate_years=[2099, 2021])
    entries = crawler.crawl()

    assert [e.law_id for e in entries] == ["7", "42", "100"]
    law_a = entries[1]
    assert law_a.raw_title == "Law A (Amended)"
    assert law_a.discovery_year == 2020
    assert "99999" not in [e.law_id for e in entries]

    assert len(crawler.failures) == 1
    assert "2021 page 3" in crawler.failures[0]
    assert calls[0] == (2099, 1)


def test_crawl_is_deterministic_across_pool_sizes():
    years = (2019, 2020)
    pages = {
        (2019, 1): listing_html([("5", "Law Five", "")], years=years, max_page=2),
        (2019, 2): listing_html([("6", "Law Six", "")], years=years),
        (2020, 1): listing_html([("5", "Law Five as amended", "")], years=years),
    }
    results = []
    for workers in (1, 4):
        crawler = LawsByYearCrawler(make_loader(pages, []), workers=workers, candidate_years=[2020])
        results.append(crawler.crawl())
    assert results[0] == results[1]


def test_crawl_from_law_id_filter():
    pages = {(2020, 1): listing_html([("5", "Law Five", ""), ("50", "Law Fifty", "")], years=(2020,))}
    crawler = LawsByYearCrawler(make_loader(pages, []), candidate_years=[2020], from_law_id=10)
    assert [e.law_id for e in crawler.crawl()] == ["50"]


def test_crawl_without_year_partitions_raises():
    crawler = LawsByYearCrawler(make_loader({}, []), candidate_years=[2024, 2023])
    with pytest.raises(CorpusDiscoveryError):
        crawler.crawl()
