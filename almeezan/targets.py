from __future__ import annotations

from typing import Dict, Tuple

# Curated ids for well-known English documents, keyed by index file name.
# Values are (stable_id, display_name).
FIXED_TARGETS_BY_DOCX: Dict[str, Tuple[str, str]] = {
    "132016.docx": ("qa-pdp-law", "Law 13/2016 (PDP)"),
    "142014.docx": ("qa-cybercrime-law", "Law 14/2014 (Cybercrime)"),
    "012021.docx": ("qa-ncsa-establishment", "Amiri Decision 1/2021"),
    "182010.docx": ("qa-egov-policies", "CoM Decision 18/2010"),
    "092022.docx": ("qa-right-to-access-information", "Law 9/2022"),
    "Law No. 11 of 2004 Promulgating the Penal Code.docx": (
        "qa-penal-code",
        "Law 11/2004 (Penal Code)",
    ),
    "Law No. (20) of 2019 on the Promulgation of Anti-Money Laundering and Terrorism Financing Law.docx": (
        "qa-aml-cft-law",
        "Law 20/2019 (AML/CFT)",
    ),
    (
        "The Council of Ministers Decision No. (41) of 2019 on issuance of the Executive Regulation of "
        "The Anti-Money Laundering and Terrorism Financing Law Promulgated by Law No. (20) of 2019.docx"
    ): ("qa-aml-cft-exec-regulation", "CoM Decision 41/2019"),
    "242015.docx": ("qa-tenders-auctions-law", "Law 24/2015 (Tenders)"),
    "162019.docx": ("qa-tenders-auctions-exec-regulation", "CoM Decision 16/2019"),
}

# English documents whose DOCX is missing or unreadable; the Arabic
# LawViewWord rendering is used instead. Values are (LawID, language).
ARABIC_FALLBACK_BY_DOCX: Dict[str, Tuple[str, str]] = {
    "Law No. (16) of 2018 on the Regulation of Non-Qataris’ Ownership and Usage of Real Estate.docx": (
        "7797",
        "ar",
    ),
    "Law No. (17) of 2018 on Establishing Workers’ Support and Insurance Fund.docx": ("7798", "ar"),
}
