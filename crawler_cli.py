#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from photo_crawler.api import build_source, scan, status, test_image, watch
from photo_crawler.config import (
    DEFAULT_CONFIG_PATH,
    CrawlerConfig,
    config_to_dict,
    load_config,
    save_default_config,
    validate_vault,
)
from photo_crawler.errors import ConfigError, PhotoCrawlerError, StateDecodeError
from photo_crawler.models import ItemFailed, ItemProcessed, PipelineEvent, ScanResult, ScanStatus
from photo_crawler.state import StateStore
from photo_crawler.utils import utc_now

console = Console()
err_console = Console(stderr=True)

OCR_PREVIEW_CHARS = 500


def print_info(message: str) -> None:
    console.print(f"[blue]>[/blue] {escape(message)}", highlight=False)


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}", highlight=False)


def print_error(message: str) -> None:
    err_console.print(f"[red]✗[/red] {escape(message)}", highlight=False)


def print_dim(message: str) -> None:
    console.print(f"[dim]{escape(message)}[/dim]", highlight=False)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default="", help=f"Config file (default: {DEFAULT_CONFIG_PATH})")
    common.add_argument("--vault", default="", help="Override vault path")
    common.add_argument("--api-key", default="", help="Override API key (or set ANTHROPIC_API_KEY)")
    common.add_argument("-v", "--verbose", action="count", default=0, help="-v for INFO, -vv for DEBUG logs")

    parser = argparse.ArgumentParser(prog="photo-crawler", description="Extract text from photos into Obsidian")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init", parents=[common], help="Create the config file")
    sub.add_parser("scan", parents=[common], help="Run one scan cycle")
    sub.add_parser("watch", parents=[common], help="Run continuously, scanning on an interval")

    test_cmd = sub.add_parser("test", parents=[common], help="Test classification on a single image file")
    test_cmd.add_argument("image", help="Image file path")
    test_cmd.add_argument("--extract", action="store_true", help="Also run remote extraction")
    test_cmd.add_argument("--save", action="store_true", help="Extract and save to the vault")

    sub.add_parser("status", parents=[common], help="Show processing statistics")
    sub.add_parser("config", parents=[common], help="Print the effective config")

    return parser.parse_args(argv)


def configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = getattr(logging, os.getenv("PHOTO_CRAWLER_LOG_LEVEL", "WARNING").upper(), logging.WARNING)
    logging.basicConfig(stream=sys.stderr, level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))


def config_path(args: argparse.Namespace) -> Path:
    return Path(args.config).expanduser() if args.config else DEFAULT_CONFIG_PATH


def apply_flags(cfg: CrawlerConfig, args: argparse.Namespace) -> CrawlerConfig:
    return cfg.with_overrides(
        vault_path=Path(args.vault).expanduser() if args.vault else None,
        api_key=args.api_key or None,
    )


def load_run_config(args: argparse.Namespace) -> CrawlerConfig:
    """Config for scan/watch: file, then flags. Raises ConfigError when unusable."""
    cfg = apply_flags(load_config(config_path(args)), args)
    problems = []
    if not str(cfg.vault_path).strip() or str(cfg.vault_path) == ".":
        problems.append(f"No vault path set. Edit {config_path(args)} or pass --vault <path>")
    if not cfg.api_key:
        problems.append("No API key set. Edit config, pass --api-key <key>, or set ANTHROPIC_API_KEY")
    if problems:
        raise ConfigError("\n".join(problems))
    if not validate_vault(cfg.vault_path):
        raise ConfigError(f"Invalid vault path: {cfg.vault_path} (no .obsidian directory found)")
    return cfg


def open_state(cfg: CrawlerConfig) -> StateStore:
    try:
        return StateStore(cfg.state_path)
    except StateDecodeError as exc:
        print_error(f"{exc}")
        print_info("State is disposable, starting fresh. Vault notes are unaffected.")
        return StateStore(cfg.state_path, load=False)


def scope_description(cfg: CrawlerConfig) -> str:
    return build_source(cfg).description


def category_icon(category: str) -> str:
    normalized = category.strip().lower()
    for needle, icon in (
        ("book", "📖"),
        ("article", "📰"),
        ("duolingo", "🌍"),
        ("code", "💻"),
        ("flash", "🗂️"),
        ("note", "📝"),
    ):
        if needle in normalized:
            return icon
    return "📄"


def print_event(event: PipelineEvent) -> None:
    if isinstance(event, ItemProcessed):
        title = (event.extraction.title if event.extraction else "") or event.asset_id
        if not event.written:
            print_dim(f"  ⏭  {title} → skipped ({event.reason})")
            return
        console.print(f"  {category_icon(event.extraction.category)} {escape(title)} → {escape(event.markdown_path)}", highlight=False)
    elif isinstance(event, ItemFailed):
        print_error(f"  Failed {event.asset_id}: {event.message}")


# Commands


def cmd_init(args: argparse.Namespace) -> int:
    path = config_path(args)
    if path.exists():
        print_info(f"Config already exists at {path}")
        print_info("Edit it manually or delete it and run 'init' again.")
        return 0
    save_default_config(path)
    print_success(f"Config created at {path}")
    console.print(
        "\n  Required fields:\n"
        "    vault_path  path to your Obsidian vault (must contain .obsidian/)\n"
        "    api_key     your Anthropic API key\n\n"
        '  Then create an album called "PhotoCrawler" in Apple Photos\n'
        '  (or change the "album" field, or set "library_path" to scan a folder of images).\n'
        "  Add photos you want captured to that album, then run: photo-crawler scan\n",
        highlight=False,
    )
    return 0


def cmd_scan(args: argparse.Namespace) -> int:
    cfg = load_run_config(args)
    print_info(f"Scanning {scope_description(cfg)}...")
    result = scan(cfg, listener=print_event, state=open_state(cfg))

    if result.status is ScanStatus.FAILED:
        print_error(f"Scan failed: {result.message}")
        return 1
    if result.status is ScanStatus.SKIPPED:
        print_info(result.message)
        return 0
    print_success(
        f"Scan complete: {result.photos_found} found, {result.photos_extracted} extracted, "
        f"{result.photos_written} written, {result.photos_skipped} skipped, {result.errors} errors"
    )
    return 0


def print_cycle(result: ScanResult) -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    if result.status is ScanStatus.FAILED:
        print_error(f"[{timestamp}] Scan failed: {result.message}")
    elif result.status is ScanStatus.SKIPPED:
        print_dim(f"[{timestamp}] {result.message}")
    elif result.photos_written > 0:
        print_success(f"[{timestamp}] {result.photos_written} new captures written")
    else:
        print_dim(f"[{timestamp}] No new learning content found")


def cmd_watch(args: argparse.Namespace) -> int:
    cfg = load_run_config(args)
    stop_event = threading.Event()

    def handle_signal(signum, _frame):
        if not stop_event.is_set():
            print_info("Stopping watch after the current cycle...")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    print_info(f"Watching {scope_description(cfg)} every {cfg.scan_interval_seconds}s. Press Ctrl+C to stop.")
    cycles = watch(cfg, stop_event, listener=print_event, on_result=print_cycle, state=open_state(cfg))
    print_info(f"Stopped after {cycles} scan cycle(s).")
    return 0


def _test_config(args: argparse.Namespace) -> CrawlerConfig:
    try:
        cfg = load_config(config_path(args))
    except ConfigError:
        if args.save:
            raise
        cfg = CrawlerConfig(api_key=os.getenv("ANTHROPIC_API_KEY", ""))
    return apply_flags(cfg, args)


def render_classification(report) -> None:
    result = report.classification
    table = Table(title="Classification Result", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Learning content", "[green]YES[/green]" if result.is_learning_content else "[red]NO[/red]")
    table.add_row("Category hint", result.category_hint.display_name)
    table.add_row("Confidence", f"{result.confidence * 100:.0f}%")
    table.add_row("Text density", f"{result.text_density * 100:.1f}%")
    table.add_row("Line count", str(result.line_count))
    table.add_row("Matched keywords", ", ".join(result.matched_keywords) or "(none)")
    table.add_row("Reason", result.reason)
    console.print(table)

    if result.ocr_text:
        console.print("\n  OCR Text (first 500 chars)", style="bold")
        console.print(result.ocr_text[:OCR_PREVIEW_CHARS], highlight=False, markup=False)
        if len(result.ocr_text) > OCR_PREVIEW_CHARS:
            print_dim(f"  ... ({len(result.ocr_text) - OCR_PREVIEW_CHARS} more characters)")


def render_extraction(report) -> None:
    extraction = report.extraction
    plan = extraction.write_plan
    table = Table(title="Extraction Result", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Category", extraction.category)
    table.add_row("Title", extraction.title or "(untitled)")
    table.add_row("Write mode", plan.mode.value)
    table.add_row("Write path", plan.path or "(default)")
    if plan.append_to:
        table.add_row("Append to", plan.append_to)
    console.print(table)

    if extraction.is_skip:
        print_dim("  Skipped by rules.")
        return
    if report.saved_path is not None:
        print_success(f"Saved to vault: {report.saved_path}")
        return
    print_info("Generated markdown preview:")
    console.print(report.preview, highlight=False, markup=False)
    print_dim("  (use --save to write to vault)")


def cmd_test(args: argparse.Namespace) -> int:
    cfg = _test_config(args)
    image = Path(args.image).expanduser()
    if not image.is_file():
        print_error(f"File not found: {image}")
        return 1

    extract = args.extract or args.save
    print_info(f"Testing image: {image.resolve()}")
    report = test_image(image, cfg, extract=extract, save=args.save)
    render_classification(report)
    if report.extraction is not None:
        render_extraction(report)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    try:
        cfg = apply_flags(load_config(config_path(args)), args)
        config_line = str(config_path(args))
    except ConfigError:
        cfg = CrawlerConfig()
        config_line = "not found (run 'photo-crawler init')"

    info = status(cfg, open_state(cfg))
    table = Table(title="photo-crawler status", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Photos processed", str(info["processed"]))
    for name, value in info["stats"].items():
        table.add_row(f"Total {name}", str(value))
    last_scan = info["last_scan"]
    table.add_row("Last scan", _relative_time(last_scan) if last_scan else "never")
    table.add_row("State file", info["state_path"])
    table.add_row("Config", config_line)
    console.print(table)
    return 0


def _relative_time(moment: datetime) -> str:
    seconds = int((utc_now() - moment).total_seconds())
    if seconds < 60:
        return f"{seconds} seconds ago"
    if seconds < 3600:
        return f"{seconds // 60} minutes ago"
    if seconds < 86400:
        return f"{seconds // 3600} hours ago"
    return f"{seconds // 86400} days ago"


def cmd_config(args: argparse.Namespace) -> int:
    cfg = apply_flags(load_config(config_path(args)), args)
    console.print_json(json.dumps(config_to_dict(cfg, mask_secrets=True), ensure_ascii=False))
    return 0


COMMANDS = {
    "init": cmd_init,
    "scan": cmd_scan,
    "watch": cmd_watch,
    "test": cmd_test,
    "status": cmd_status,
    "config": cmd_config,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)
    try:
        return COMMANDS[args.cmd](args)
    except PhotoCrawlerError as exc:
        print_error(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
