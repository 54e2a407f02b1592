from __future__ import annotations

import pytest

from almeezan.errors import EmptyExtractionError
from almeezan.parser import (
    MAX_DEFINITIONS,
    Provision,
    extract_definitions,
    make_provision_ref,
    match_heading,
    normalize_digits,
    parse_line_sets,
    parse_lines,
    parse_section_token,
    segment_provisions,
)


def sections(provisions):
    return [p.section for p in provisions]


def test_digit_and_ordinal_normalisation():
    assert normalize_digits("المادة ١٢") == "المادة 12"
    assert normalize_digits("۳۴") == "34"
    assert parse_section_token("(٥)") == "5"
    assert parse_section_token("Twenty-First") == "21"
    assert parse_section_token("أولاً:") == "1"
    assert parse_section_token("الحادي عشر") == "11"
    assert parse_section_token("Definitions") is None


def test_explicit_headings_english_and_arabic():
    lines = [
        "State of Qatar",
        "Law No. (13) of 2016",
        "Article (1)",
        "This Law applies to personal data.",
        "Article 2 - Scope",
        "It applies within the State.",
        "المادة (٣)",
        "يعمل بهذا القانون من تاريخ نشره.",
    ]
    provisions = segment_provisions(lines)

    assert sections(provisions) == ["1", "2", "3"]
    assert provisions[0].provision_ref == "art1"
    assert provisions[0].title == "Article (1)"
    assert provisions[0].content == "This Law applies to personal data."
    assert provisions[1].content == "Scope\nIt applies within the State."
    assert provisions[2].content == "يعمل بهذا القانون من تاريخ نشره."


def test_single_article_with_parenthesised_number():
    parsed = parse_lines(["Article (5)", "Whoever violates this law shall be penalized."])
    assert [(p.section, p.content) for p in parsed.provisions] == [
        ("5", "Whoever violates this law shall be penalized."),
    ]


def test_arabic_heading_without_parentheses():
    provisions = segment_provisions(["المادة ٣", "تسري أحكام هذا القانون على جميع الجهات."])
    assert sections(provisions) == ["3"]
    assert provisions[0].content == "تسري أحكام هذا القانون على جميع الجهات."


def test_bare_arabic_ordinal_line_is_a_heading():
    provisions = segment_provisions(["اولا", "يعمل بهذا القرار من تاريخ صدوره."])
    assert sections(provisions) == ["1"]
    assert provisions[0].content == "يعمل بهذا القرار من تاريخ صدوره."


def test_front_matter_before_first_heading_is_dropped():
    provisions = segment_provisions(["Preamble text", "We, Tamim bin Hamad", "Article (1)", "Body"])
    assert len(provisions) == 1
    assert "Preamble" not in provisions[0].content


def test_two_line_heading_keyword_then_number():
    lines = ["Article", "(5)", "Text of five.", "المادة", "٦", "نص المادة السادسة"]
    provisions = segment_provisions(lines)
    assert sections(provisions) == ["5", "6"]
    assert provisions[0].content == "Text of five."


def test_explicit_heading_wins_over_ordinal():
    heading = match_heading(["Article (7): First", "body"], 0)
    assert heading is not None
    assert heading.section == "7"
    assert heading.consumed == 1


def test_ordinal_headings_english_and_arabic():
    lines = [
        "Decision of the Council",
        "First: The committee is formed.",
        "Second",
        "It meets monthly.",
        "ثالثاً: يبلغ هذا القرار.",
    ]
    provisions = segment_provisions(lines)
    assert sections(provisions) == ["1", "2", "3"]
    assert provisions[0].content == "The committee is formed."
    assert provisions[1].content == "It meets monthly."
    assert provisions[2].content == "يبلغ هذا القرار."


def test_empty_section_is_not_emitted():
    provisions = segment_provisions(["Article (1)", "Article (2)", "Body of two"])
    assert sections(provisions) == ["2"]


def test_refs_unique_and_longer_duplicate_kept():
    lines = [
        "Article (1)",
        "short",
        "Article (2)",
        "body two",
        "Article (1)",
        "a much longer body for article one",
    ]
    parsed = parse_lines(lines)
    refs = [p.provision_ref for p in parsed.provisions]
    assert refs == ["art1", "art2"]
    assert parsed.provisions[0].content == "a much longer body for article one"


def test_provision_ref_slug():
    assert make_provision_ref("12") == "art12"
    assert make_provision_ref("3A") == "art3a"
    assert make_provision_ref("") == "art"


def test_definitions_extracted_and_deduplicated():
    provisions = [
        Provision(
            provision_ref="art1",
            section="1",
            title="Article (1)",
            content=(
                "In applying this Law, the following words shall have the meanings shown:\n"
                '"Ministry" means the Ministry of Interior of the State.\n'
                "Minister means the Minister of Interior.\n"
                "ministry means a duplicate entry that is ignored."
            ),
        ),
        Provision(provision_ref="art2", section="2", title="Article (2)", content="No definitions here."),
    ]
    definitions = extract_definitions(provisions)
    assert [d.term for d in definitions] == ["Ministry", "Minister"]
    assert definitions[0].definition == "the Ministry of Interior of the State."
    assert all(d.source_provision == "art1" for d in definitions)


def test_single_quoted_definition():
    provisions = [
        Provision(
            provision_ref="art1",
            section="1",
            title="Article (1)",
            content="'Personal Data' means any information relating to an identified individual.",
        )
    ]
    definitions = extract_definitions(provisions)
    assert [(d.term, d.definition) for d in definitions] == [
        ("Personal Data", "any information relating to an identified individual."),
    ]


def test_definitions_capped():
    body = "\n".join(f"Term{i:03d} means the defined thing number {i}." for i in range(MAX_DEFINITIONS + 10))
    provisions = [Provision("art1", "1", "Article (1)", body)]
    assert len(extract_definitions(provisions)) == MAX_DEFINITIONS


def test_fallback_to_less_restrictive_extraction():
    narrowed = ["Table of contents", "Nothing here"]
    full = ["Header", "Article (1)", "Body of article one"]
    parsed = parse_line_sets([narrowed, full])
    assert parsed.strategy == "headings[1]"
    assert sections(parsed.provisions) == ["1"]


def test_synthetic_single_provision_when_no_headings():
    lines = ["فهرس الموضوعات", "This announcement regulates the opening hours of public offices."]
    parsed = parse_line_sets([lines])
    assert parsed.strategy == "synthetic[0]"
    assert len(parsed.provisions) == 1
    provision = parsed.provisions[0]
    assert provision.provision_ref == "art1"
    assert "فهرس" not in provision.content


def test_textless_document_raises():
    with pytest.raises(EmptyExtractionError):
        parse_line_sets([["Too short"], []])
