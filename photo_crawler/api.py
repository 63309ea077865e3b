from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .anthropic_client import VisionTransport
from .classifier import LocalClassifier, Recognizer
from .config import CrawlerConfig, validate_vault
from .errors import ConfigError
from .extractor import PolicyExtractor
from .markdown import insert_block, render_document
from .models import ClassificationResult, ExtractionResult, ScanResult, WriteMode
from .pipeline import Listener, ProcessingPipeline
from .pipeline import watch as watch_loop
from .sources import FolderPhotoSource, PhotoSource, PhotosLibrarySource
from .state import StateStore
from .utils import utc_now
from .vault_writer import VaultWriter


def build_source(cfg: CrawlerConfig) -> PhotoSource:
    if cfg.library_path:
        return FolderPhotoSource(cfg.library_path, cfg.album_name, cfg.supported_exts)
    return PhotosLibrarySource(cfg.album_name)


def build_pipeline(
    cfg: CrawlerConfig,
    *,
    source: PhotoSource | None = None,
    transport: VisionTransport | None = None,
    recognizer: Recognizer | None = None,
    state: StateStore | None = None,
) -> ProcessingPipeline:
    return ProcessingPipeline(
        cfg,
        source or build_source(cfg),
        LocalClassifier(cfg, recognizer),
        PolicyExtractor(cfg, transport),
        VaultWriter(cfg.vault_path),
        state or StateStore(cfg.state_path),
    )


def scan(cfg: CrawlerConfig, *, listener: Listener | None = None, **kwargs: Any) -> ScanResult:
    pipeline = build_pipeline(cfg, **kwargs)
    if listener is not None:
        pipeline.add_listener(listener)
    return pipeline.run_scan()


def watch(
    cfg: CrawlerConfig,
    stop_event: threading.Event,
    *,
    listener: Listener | None = None,
    on_result: Callable[[ScanResult], None] | None = None,
    **kwargs: Any,
) -> int:
    pipeline = build_pipeline(cfg, **kwargs)
    if listener is not None:
        pipeline.add_listener(listener)
    return watch_loop(pipeline, cfg.scan_interval_seconds, stop_event, on_result)


@dataclass
class ImageTestReport:
    path: Path
    size_bytes: int
    classification: ClassificationResult
    extraction: ExtractionResult | None = None
    preview: str = ""
    saved_path: Path | None = None


def preview_markdown(extraction: ExtractionResult, asset_id: str) -> str:
    plan = extraction.write_plan
    if plan.mode is WriteMode.APPEND:
        return insert_block("", extraction.content, plan.append_to)
    anchor = plan.append_to if plan.mode is WriteMode.UPSERT else None
    return render_document(extraction.title, extraction.category, utc_now(), [asset_id], extraction.content, anchor)


def test_image(
    image_path: str | Path,
    cfg: CrawlerConfig,
    *,
    extract: bool = False,
    save: bool = False,
    transport: VisionTransport | None = None,
    recognizer: Recognizer | None = None,
) -> ImageTestReport:
    """Classify one image file, optionally extract it and write it into the vault."""
    path = Path(image_path).expanduser().resolve()
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Could not read file: {path} ({exc})") from exc

    report = ImageTestReport(path, len(data), LocalClassifier(cfg, recognizer).classify(data))
    if not (extract or save):
        return report

    if not cfg.api_key and transport is None:
        raise ConfigError("Extraction requires an API key. Set ANTHROPIC_API_KEY or configure it in the config file.")

    asset_id = path.name
    captured = utc_now()
    report.extraction = PolicyExtractor(cfg, transport).extract(data, report.classification, asset_id, captured)
    if report.extraction.is_skip:
        return report

    if save:
        if not validate_vault(cfg.vault_path):
            raise ConfigError(f"Invalid vault path: {cfg.vault_path} (no .obsidian directory found)")
        relative = VaultWriter(cfg.vault_path).write(report.extraction, captured, asset_id)
        report.saved_path = Path(cfg.vault_path) / relative
    else:
        report.preview = preview_markdown(report.extraction, asset_id)
    return report


def status(cfg: CrawlerConfig, state: StateStore | None = None) -> dict[str, Any]:
    state = state or StateStore(cfg.state_path)
    last_scan = state.last_scan_time
    return {
        "processed": state.processed_count(),
        "stats": state.stats(),
        "last_scan": last_scan,
        "state_path": str(cfg.state_path),
    }
