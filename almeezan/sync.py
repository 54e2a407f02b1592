#!/usr/bin/env python3
"""
Al Meezan (Qatar) legislation sync -> article-level JSON records.

Two corpora are ingested:
- english: the EnglishLawsList.aspx index (DOCX/PDF per law, curated Arabic
  fallbacks for a few documents)
- full: every law in the year-partitioned LawsByYear.aspx listing, read from
  the Arabic LawViewWord rendering or the per-article LawArticles pages

Fetched bytes are cached under <data-dir>/source so reruns are idempotent.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from almeezan.catalogue import (
    ENGLISH_INDEX_URL,
    LAWS_BY_YEAR_URL,
    CatalogEntry,
    LawsByYearCrawler,
    listing_page_url,
    parse_english_laws_list,
)
from almeezan.errors import CorpusDiscoveryError, IngestError, ZeroOutputError, truncate_error
from almeezan.fetcher import PORTAL_ORIGIN, USER_AGENT, FetchConfig, HttpClient, resolve_min_interval
from almeezan.records import (
    Record,
    SourceLoader,
    SourceStrategy,
    TargetConfig,
    build_record,
    build_targets,
    english_strategies,
    full_strategies,
    law_target,
)
from almeezan.storage import SourceCache, clear_json_files, write_json

log = logging.getLogger(__name__)

CORPUS_ENGLISH = "english"
CORPUS_FULL = "full"
CORPORA = (CORPUS_ENGLISH, CORPUS_FULL)

LIVE_WORKERS = 2
CACHED_WORKERS = 8


# -----------------
# CLI + config
# -----------------


@dataclass(frozen=True)
class Config:
    user_agent: str
    sleep_seconds: float
    timeout_seconds: float
    max_retries: int
    backoff_base_seconds: float


@dataclass(frozen=True)
class RunOptions:
    data_dir: Path
    corpora: Sequence[str] = CORPORA
    limit: Optional[int] = None
    from_law_id: Optional[int] = None
    workers: int = LIVE_WORKERS
    skip_fetch: bool = False
    refresh: bool = False

    @property
    def cache_mode(self) -> str:
        if self.skip_fetch:
            return "offline"
        if self.refresh:
            return "refresh"
        return "read-through"

    @property
    def source_dir(self) -> Path:
        return self.data_dir / "source"

    @property
    def seed_dir(self) -> Path:
        return self.data_dir / "seed"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description=(
            "Al Meezan legislation sync -> article-level JSON records. "
            "Fetches are paced, retried and cached; reruns against the cache are byte-identical."
        )
    )

    p.add_argument(
        "--data-dir",
        default=str(Path(__file__).resolve().parents[1] / "data"),
        help="Root for source/ (fetched bytes), seed/ (records), manifest and skip report",
    )
    p.add_argument(
        "--corpus",
        choices=[CORPUS_ENGLISH, CORPUS_FULL, "all"],
        default="all",
        help="Which corpus to ingest",
    )

    p.add_argument("--user-agent", default=USER_AGENT)
    p.add_argument(
        "--sleep-seconds",
        type=float,
        default=1.0,
        help="Minimum interval between outbound requests (env ALMEEZAN_MIN_DELAY_SECONDS overrides)",
    )
    p.add_argument("--timeout-seconds", type=float, default=8.0)
    p.add_argument("--max-retries", type=int, default=2)
    p.add_argument("--backoff-base-seconds", type=float, default=1.0)

    p.add_argument("--limit", type=int, default=None, help="Process at most N laws per corpus")
    p.add_argument("--from-law-id", type=int, default=None, help="Skip listing laws with a lower numeric id")
    p.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Worker pool size (default {LIVE_WORKERS}, or {CACHED_WORKERS} with --skip-fetch)",
    )

    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--skip-fetch", action="store_true", help="Read only from the local source cache")
    mode.add_argument("--refresh", action="store_true", help="Ignore the cache and re-download every source")

    p.add_argument("--verbose", action="store_true")

    return p.parse_args(argv)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# -----------------
# Run bookkeeping
# -----------------


@dataclass
class CorpusStats:
    discovered: int = 0
    written: int = 0
    skipped: int = 0
    fallback_used: int = 0
    metadata_only: int = 0
    total_provisions: int = 0
    total_definitions: int = 0


@dataclass(frozen=True)
class WorkItem:
    corpus: str
    entry: CatalogEntry
    target: TargetConfig
    strategies: Callable[[], List[SourceStrategy]]


@dataclass
class ItemOutcome:
    item: WorkItem
    record: Optional[Record] = None
    error: str = ""


@dataclass
class RunSummary:
    stats: Dict[str, CorpusStats] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    metadata_only: List[str] = field(default_factory=list)
    written_paths: List[Path] = field(default_factory=list)

    @property
    def total_written(self) -> int:
        return len(self.written_paths)


# -----------------
# Discovery
# -----------------


def discover_english(loader: SourceLoader) -> List[WorkItem]:
    html = loader.load_text(ENGLISH_INDEX_URL, loader.cache.path_for("index", "EnglishLawsList.html"))
    entries = parse_english_laws_list(html)
    if not entries:
        raise CorpusDiscoveryError("No laws found in EnglishLawsList.aspx")

    targets = build_targets(entries)
    return [
        WorkItem(
            corpus=CORPUS_ENGLISH,
            entry=entry,
            target=target,
            strategies=lambda entry=entry: english_strategies(entry, loader),
        )
        for entry, target in zip(entries, targets)
    ]


def discover_full(loader: SourceLoader, opts: RunOptions, summary: RunSummary) -> List[WorkItem]:
    def load_page(year: int, page: int) -> str:
        return loader.load_text(
            listing_page_url(year, page),
            loader.cache.path_for("listing", str(year), f"page-{page}.html"),
        )

    crawler = LawsByYearCrawler(load_page, workers=opts.workers, from_law_id=opts.from_law_id)
    try:
        entries = crawler.crawl()
    finally:
        summary.skipped.extend(f"corpus:{CORPUS_FULL}: {reason}" for reason in crawler.failures)

    return [
        WorkItem(
            corpus=CORPUS_FULL,
            entry=entry,
            target=law_target(entry),
            strategies=lambda entry=entry: full_strategies(entry, loader),
        )
        for entry in entries
    ]


# -----------------
# Processing
# -----------------


class ProgressPrinter:
    def __init__(self, total: int):
        self.total = total
        self.done = 0
        self._lock = threading.Lock()

    def report(self, outcome: ItemOutcome) -> None:
        with self._lock:
            self.done += 1
            n = self.done
        item_id = outcome.item.target.stable_id
        record = outcome.record
        if record is None:
            log.info("[%d/%d] %s ... skip (%s)", n, self.total, item_id, outcome.error)
        elif record.metadata_only:
            log.info("[%d/%d] %s ... metadata only", n, self.total, item_id)
        else:
            extra = ", fallback" if record.fallback_used else ""
            log.info(
                "[%d/%d] %s ... ok (%d provisions, %d definitions%s)",
                n,
                self.total,
                item_id,
                len(record.provisions),
                len(record.definitions),
                extra,
            )


def process_item(item: WorkItem) -> ItemOutcome:
    try:
        record = build_record(item.entry, item.target, item.strategies())
    except Exception as exc:
        log.debug("hard skip %s", item.target.stable_id, exc_info=True)
        return ItemOutcome(item=item, error=truncate_error(f"{type(exc).__name__}: {exc}"))
    return ItemOutcome(item=item, record=record)


def process_items(items: Sequence[WorkItem], workers: int) -> List[ItemOutcome]:
    """Build records on a bounded pool; outcomes come back in item order."""
    if not items:
        return []
    progress = ProgressPrinter(len(items))

    def run_one(item: WorkItem) -> ItemOutcome:
        outcome = process_item(item)
        progress.report(outcome)
        return outcome

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        return list(pool.map(run_one, items))


def record_filename(number: int, width: int, record_id: str) -> str:
    return f"{number:0{width}d}-{record_id}.json"


def write_records(outcomes: Sequence[ItemOutcome], seed_dir: Path, summary: RunSummary) -> None:
    """Number records in catalog order and write them; write failures are hard skips."""
    built = [o for o in outcomes if o.record is not None]
    width = max(2, len(str(len(built))))

    number = 0
    for outcome in built:
        record = outcome.record
        stats = summary.stats[outcome.item.corpus]
        number += 1
        path = seed_dir / record_filename(number, width, record.id)
        try:
            write_json(path, record.to_dict())
        except OSError as exc:
            outcome.error = truncate_error(f"write failed: {exc}")
            outcome.record = None
            stats.skipped += 1
            summary.skipped.append(f"{record.id}: {outcome.error}")
            continue

        summary.written_paths.append(path)
        stats.written += 1
        stats.total_provisions += len(record.provisions)
        stats.total_definitions += len(record.definitions)
        if record.fallback_used:
            stats.fallback_used += 1
        if record.metadata_only:
            stats.metadata_only += 1
            summary.metadata_only.append(f"{record.id}: {truncate_error(record.source_description)}")


# -----------------
# Run
# -----------------


def build_client(cfg: Config) -> HttpClient:
    return HttpClient(
        FetchConfig(
            user_agent=cfg.user_agent,
            min_interval_seconds=resolve_min_interval(cfg.sleep_seconds),
            timeout_seconds=cfg.timeout_seconds,
            max_retries=cfg.max_retries,
            backoff_base_seconds=cfg.backoff_base_seconds,
        )
    )


def build_manifest(cfg: Config, opts: RunOptions, summary: RunSummary) -> Dict[str, Any]:
    return {
        "generated_at": utc_now_iso(),
        "sources": {
            "english_index": ENGLISH_INDEX_URL,
            "laws_by_year": LAWS_BY_YEAR_URL,
            "law_view_word": f"{PORTAL_ORIGIN}/LawViewWord.aspx",
            "law_page": f"{PORTAL_ORIGIN}/LawPage.aspx",
            "law_articles": f"{PORTAL_ORIGIN}/LawArticles.aspx",
        },
        "options": {
            "corpora": list(opts.corpora),
            "limit": opts.limit,
            "from_law_id": opts.from_law_id,
            "workers": opts.workers,
            "skip_fetch": opts.skip_fetch,
            "refresh": opts.refresh,
            "user_agent": cfg.user_agent,
            "sleep_seconds": cfg.sleep_seconds,
            "timeout_seconds": cfg.timeout_seconds,
            "max_retries": cfg.max_retries,
            "backoff_base_seconds": cfg.backoff_base_seconds,
        },
        "corpora": {name: asdict(stats) for name, stats in summary.stats.items()},
        "total_written": summary.total_written,
    }


def run(cfg: Config, opts: RunOptions, *, client: Optional[HttpClient] = None) -> RunSummary:
    """Discover, build and write every corpus in `opts.corpora`.

    Raises ZeroOutputError (after writing the manifest and skip report) when
    no record was written.
    """
    opts.source_dir.mkdir(parents=True, exist_ok=True)
    cache = SourceCache(opts.source_dir, mode=opts.cache_mode)
    if client is None and not opts.skip_fetch:
        client = build_client(cfg)
    loader = SourceLoader(cache, client)

    summary = RunSummary()
    items: List[WorkItem] = []
    for corpus in opts.corpora:
        stats = summary.stats.setdefault(corpus, CorpusStats())
        try:
            if corpus == CORPUS_ENGLISH:
                found = discover_english(loader)
            else:
                found = discover_full(loader, opts, summary)
        except (IngestError, OSError) as exc:
            log.warning("Discovery failed for %s corpus: %s", corpus, exc)
            summary.skipped.append(f"corpus:{corpus}: {truncate_error(str(exc))}")
            continue

        stats.discovered = len(found)
        if opts.limit is not None:
            found = found[: max(0, opts.limit)]
        log.info("%s corpus: %d discovered, %d planned", corpus, stats.discovered, len(found))
        items.extend(found)

    # Previous records survive a run that discovered nothing.
    if items:
        removed = clear_json_files(opts.seed_dir)
        if removed:
            log.debug("removed %d old records from %s", removed, opts.seed_dir)

    outcomes = process_items(items, opts.workers)
    for outcome in outcomes:
        if outcome.record is None:
            summary.stats[outcome.item.corpus].skipped += 1
            summary.skipped.append(f"{outcome.item.target.stable_id}: {outcome.error}")
    write_records(outcomes, opts.seed_dir, summary)

    write_json(opts.data_dir / "manifest.json", build_manifest(cfg, opts, summary))
    write_json(
        opts.data_dir / "skip-report.json",
        {"skipped": summary.skipped, "metadata_only": summary.metadata_only},
    )

    if summary.total_written == 0:
        raise ZeroOutputError("Ingestion produced zero records")
    return summary


def print_summary(summary: RunSummary, opts: RunOptions) -> None:
    print("\nIngestion summary")
    print("-----------------")
    for name, stats in summary.stats.items():
        print(
            f"{name}: discovered={stats.discovered} written={stats.written} skipped={stats.skipped} "
            f"fallback={stats.fallback_used} metadata_only={stats.metadata_only} "
            f"provisions={stats.total_provisions} definitions={stats.total_definitions}"
        )
    print(f"Records written: {summary.total_written}")
    print(f"Records: {opts.seed_dir}")
    if summary.skipped:
        print("\nSkipped details:")
        for reason in summary.skipped:
            print(f"  - {reason}")


# -----------------
# Main
# -----------------


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        stream=sys.stdout,
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )

    cfg = Config(
        user_agent=args.user_agent,
        sleep_seconds=float(args.sleep_seconds),
        timeout_seconds=float(args.timeout_seconds),
        max_retries=int(args.max_retries),
        backoff_base_seconds=float(args.backoff_base_seconds),
    )
    workers = args.workers if args.workers and args.workers > 0 else None
    opts = RunOptions(
        data_dir=Path(args.data_dir).resolve(),
        corpora=CORPORA if args.corpus == "all" else (args.corpus,),
        limit=args.limit if args.limit and args.limit > 0 else None,
        from_law_id=args.from_law_id,
        workers=workers or (CACHED_WORKERS if args.skip_fetch else LIVE_WORKERS),
        skip_fetch=bool(args.skip_fetch),
        refresh=bool(args.refresh),
    )

    print("Al Meezan legislation sync")
    print(f"Corpora: {', '.join(opts.corpora)}; workers={opts.workers}; cache={opts.cache_mode}")

    try:
        summary = run(cfg, opts)
    except ZeroOutputError as exc:
        print(f"Fatal ingestion error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130

    print_summary(summary, opts)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
