# covermeta/cli.py
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

from bs4 import BeautifulSoup
from rich.logging import RichHandler

from covermeta.config import AppConfig, load_dotenv, read_settings_file
from covermeta.core.cache import MetadataCache
from covermeta.core.card_state import CardStateTracker
from covermeta.core.scheduler import PriorityScheduler
from covermeta.core.store import JsonlStore, MemoryStore, atomic_write_text
from covermeta.core.visibility import VisibilityTracker
from covermeta.errors import StoreError
from covermeta.integrations.goodreads import GoodreadsFetcher
from covermeta.integrations.profiler import RequestProfiler
from covermeta.integrations.relay import FetchRelay
from covermeta.orchestrator import Orchestrator
from covermeta.page.cards import AttributeMarker, CardScanner
from covermeta.page.render import SoupRenderer

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level_name: str) -> None:
    level = LOG_LEVELS.get((level_name or "info").lower(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _open_store(cfg: AppConfig):
    try:
        return JsonlStore(cfg.resolved_cache_path)
    except StoreError as e:
        logger.warning("%s; continuing with an in-memory cache", e)
        return MemoryStore()


def build_config(args: argparse.Namespace) -> AppConfig:
    used = load_dotenv(args.env)
    if used:
        logger.info("loaded .env: %s", used)
    overrides: Dict[str, object] = {}
    if args.config:
        overrides.update(read_settings_file(args.config))
    if args.cache:
        overrides["cache_path"] = args.cache
    for key in ("max_concurrent", "stagger_ms", "debounce_ms"):
        value = getattr(args, key, None)
        if value is not None:
            overrides[key] = value
    cfg = AppConfig.from_sources(overrides=overrides)
    cfg.validate()
    return cfg


async def enrich_page(
    html: str,
    cfg: AppConfig,
    *,
    visible: int = 0,
    relay: Optional[FetchRelay] = None,
    store=None,
) -> tuple:
    """Run one page session over `html`. Returns (annotated_html, summary)."""
    soup = BeautifulSoup(html, "html.parser")
    scanner = CardScanner(soup)

    # first `visible` cards in document order count as on screen
    ranks = {id(c): i for i, c in enumerate(scanner.find_unprocessed_cards())}

    def _probe(card) -> float:
        return 1.0 if ranks.get(id(card), visible) < visible else 0.0

    visibility = VisibilityTracker(threshold=cfg.visibility_threshold, probe=_probe)
    scheduler = PriorityScheduler(visibility, max_concurrent=cfg.max_concurrent, stagger_s=cfg.stagger_s)
    own_store = store is None
    store = _open_store(cfg) if own_store else store
    cache = MetadataCache(store, ttl_s=cfg.cache_ttl_s)
    own_relay = relay is None
    relay = relay if relay is not None else FetchRelay(
        timeout_s=cfg.timeout_s,
        retries=cfg.retries,
        user_agent=cfg.user_agent,
    )
    orch = Orchestrator(
        source=scanner,
        renderer=SoupRenderer(soup),
        fetcher=GoodreadsFetcher(relay),
        cache=cache,
        states=CardStateTracker(AttributeMarker()),
        visibility=visibility,
        scheduler=scheduler,
        debounce_s=cfg.debounce_s,
    )
    try:
        found = orch.start()
        logger.info("Cards found: %s | visible=%s | max_concurrent=%s", found, min(visible, found), cfg.max_concurrent)
        await scheduler.join()
    finally:
        orch.close()
        if own_relay:
            relay.close()
        if own_store:
            store.close()

    summary = {"cards": found}
    summary.update(scheduler.stats.snapshot_dict())
    summary["cache_writes"] = cache.stats["writes"]
    summary["cache_errors"] = cache.stats["errors"]
    return str(soup), summary


def _cmd_enrich(args: argparse.Namespace, cfg: AppConfig) -> int:
    src = Path(args.page)
    if not src.is_file():
        raise SystemExit(f"Page not found: {src}")
    out_path = args.out or str(src.with_name(src.stem + ".enriched" + src.suffix))

    profiler = RequestProfiler() if args.profile_out else None
    relay = FetchRelay(timeout_s=cfg.timeout_s, retries=cfg.retries, user_agent=cfg.user_agent, profiler=profiler)
    try:
        html, summary = asyncio.run(enrich_page(src.read_text(encoding="utf-8"), cfg, visible=args.visible, relay=relay))
    finally:
        relay.close()

    def _write(tmp_path: str) -> None:
        Path(tmp_path).write_text(html, encoding="utf-8")

    atomic_write_text(_write, out_path)
    logger.info("Done: wrote enriched page -> %s", out_path)
    logger.info(
        "Cards %s | Dispatched %s | Completed %s | Failed %s | CacheHits %s | CacheMisses %s | PeakActive %s",
        summary["cards"],
        summary["dispatched"],
        summary["completed"],
        summary["failed"],
        summary["cache_hits"],
        summary["cache_misses"],
        summary["peak_active"],
    )
    if profiler is not None:
        profiler.write(args.profile_out)
        logger.info("Request profile -> %s", args.profile_out)
    return 0


def _cmd_cache_stats(args: argparse.Namespace, cfg: AppConfig) -> int:
    store = _open_store(cfg)
    try:
        summary = MetadataCache(store, ttl_s=cfg.cache_ttl_s).summary()
    finally:
        store.close()
    logger.info(
        "Cache %s | entries=%s | fresh=%s | expired=%s | broken=%s",
        cfg.resolved_cache_path,
        summary["entries"],
        summary["fresh"],
        summary["expired"],
        summary["broken"],
    )
    return 0


def _cmd_cache_clear(args: argparse.Namespace, cfg: AppConfig) -> int:
    store = _open_store(cfg)
    try:
        MetadataCache(store, ttl_s=cfg.cache_ttl_s).clear()
    finally:
        store.close()
    return 0


def _cmd_cache_compact(args: argparse.Namespace, cfg: AppConfig) -> int:
    try:
        store = JsonlStore(cfg.resolved_cache_path)
    except StoreError as e:
        raise SystemExit(str(e)) from e
    try:
        store.compact()
    except StoreError as e:
        raise SystemExit(str(e)) from e
    finally:
        store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="covermeta",
        description="Annotate book cover cards with Goodreads ratings (visible-first, bounded concurrency, cached)",
    )
    ap.add_argument("--config", default=None, help="YAML settings file (keys as in AppConfig)")
    ap.add_argument("--env", default=".env", help=".env file to load before reading COVERMETA_* variables")
    ap.add_argument("--cache", default=None, help="Cache JSONL path (overrides COVERMETA_CACHE_PATH)")
    ap.add_argument("--log-level", default="info", help="Log level: debug, info, warning, error")

    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("enrich", help="Enrich a saved library page and write the annotated HTML")
    p.add_argument("page", help="Saved HTML page")
    p.add_argument("--out", default=None, help="Output HTML (default: <page>.enriched.html)")
    p.add_argument("--visible", type=int, default=12, help="Treat the first N cards as on screen")
    p.add_argument("--max-concurrent", dest="max_concurrent", type=int, default=None, help="Concurrent fetch cap")
    p.add_argument("--stagger-ms", dest="stagger_ms", type=int, default=None, help="Delay between dispatches")
    p.add_argument("--profile-out", default=None, help="Write per-host request profile JSON here")
    p.set_defaults(func=_cmd_enrich)

    p = sub.add_parser("cache-stats", help="Show cache entry counts")
    p.set_defaults(func=_cmd_cache_stats)

    p = sub.add_parser("cache-clear", help="Remove every cached entry")
    p.set_defaults(func=_cmd_cache_clear)

    p = sub.add_parser("cache-compact", help="Rewrite the cache log without dead records")
    p.set_defaults(func=_cmd_cache_compact)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    cfg = build_config(args)
    return args.func(args, cfg)


if __name__ == "__main__":
    raise SystemExit(main())
