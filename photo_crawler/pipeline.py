from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterator

from .classifier import LocalClassifier
from .config import CrawlerConfig
from .errors import ClassificationError
from .extractor import PolicyExtractor
from .models import (
    ClassificationResult,
    ExtractionResult,
    ItemFailed,
    ItemProcessed,
    Photo,
    PipelineEvent,
    ScanFinished,
    ScanResult,
    ScanStarted,
    ScanStatus,
)
from .sources import PhotoSource
from .state import StateStore
from .utils import utc_now
from .vault_writer import VaultWriter

logger = logging.getLogger(__name__)

Listener = Callable[[PipelineEvent], None]


@dataclass
class Candidate:
    photo: Photo
    classification: ClassificationResult | None = None
    extraction: ExtractionResult | None = None
    error: Exception | None = None


class ProcessingPipeline:
    """One scan cycle: enumerate, pre-filter, extract, write, record.

    Classification and extraction for different photos run on a small worker
    pool (the extractor caps in-flight API calls itself). Writes then apply one
    at a time in enumeration order so appends to a shared note stay
    deterministic.
    """

    def __init__(
        self,
        cfg: CrawlerConfig,
        source: PhotoSource,
        classifier: LocalClassifier,
        extractor: PolicyExtractor,
        writer: VaultWriter,
        state: StateStore,
    ):
        self.cfg = cfg
        self.source = source
        self.classifier = classifier
        self.extractor = extractor
        self.writer = writer
        self.state = state
        self._listeners: list[Listener] = []
        self._run_lock = threading.Lock()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def _emit(self, event: PipelineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Pipeline listener failed on {type(event).__name__}")

    def run_scan(self) -> ScanResult:
        if not self._run_lock.acquire(blocking=False):
            return ScanResult(status=ScanStatus.SKIPPED, message="Scan already in progress")
        try:
            return self._run_scan()
        finally:
            self._run_lock.release()

    def _run_scan(self) -> ScanResult:
        started = utc_now()
        logger.info("Starting scan cycle")
        self._emit(ScanStarted(started))
        result = ScanResult()

        try:
            existing = self.writer.existing_asset_ids()
            photos = [p for p in self.source.list_candidates(existing) if p.id not in existing]
            result.photos_found = len(photos)
            logger.info(f"Found {len(photos)} new photos to process ({len(existing)} already in vault)")

            # Analysis runs ahead on the pool; each note is written as soon as its
            # candidate is next in enumeration order.
            for candidate in self._analyze_all(photos):
                self._finish(candidate, result)
        except Exception as exc:
            result.status = ScanStatus.FAILED
            result.message = str(exc)
            result.errors += 1
            logger.error(f"Scan failed: {exc}")
        finally:
            self.state.last_scan_time = started
            try:
                self.state.save()
            except OSError as exc:
                logger.error(f"Failed to save state: {exc}")
                if result.status is ScanStatus.COMPLETED:
                    result.status = ScanStatus.FAILED
                    result.message = f"Failed to save state: {exc}"

        result.photos_processed = result.photos_written + result.photos_skipped
        if result.status is ScanStatus.COMPLETED:
            result.message = (
                f"Processed {result.photos_processed} photos, extracted {result.photos_extracted}, "
                f"{result.errors} errors"
            )
        logger.info(f"Scan complete: {result.message}")
        self._emit(ScanFinished(result))
        return result

    def _analyze_all(self, photos: list[Photo]) -> Iterator[Candidate]:
        """Yield analyzed candidates in enumeration order.

        No more than ``max_concurrent_api_calls`` photos are submitted ahead of
        the caller. With one worker, each note is on disk before the next photo
        is analyzed.
        """
        if not photos:
            return
        workers = min(len(photos), max(1, self.cfg.max_concurrent_api_calls))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="photo-crawler") as pool:
            pending: deque[Future[Candidate]] = deque()
            for photo in photos:
                if len(pending) >= workers:
                    yield pending.popleft().result()
                pending.append(pool.submit(self._analyze, photo))
            while pending:
                yield pending.popleft().result()

    def _classify(self, photo: Photo) -> ClassificationResult:
        try:
            return self.classifier.classify(photo.image_bytes)
        except ClassificationError as exc:
            if self.cfg.library_mode:
                raise
            logger.warning(f"On-device classification unavailable for {photo.id}, continuing without hint: {exc}")
            return ClassificationResult.empty(f"On-device classification unavailable: {exc}")

    def _analyze(self, photo: Photo) -> Candidate:
        candidate = Candidate(photo)
        self.state.increment("scanned")
        try:
            classification = self._classify(photo)
            candidate.classification = classification
            self.state.increment("classified")

            # Album photos were picked by the user, so the hint never blocks them.
            if self.cfg.library_mode and not classification.is_learning_content:
                logger.info(f"Not learning content, skipping {photo.id}: {classification.reason}")
                return candidate

            candidate.extraction = self.extractor.extract(
                photo.image_bytes,
                classification,
                photo.id,
                photo.creation_time,
            )
            self.state.increment("extracted")
        except Exception as exc:
            candidate.error = exc
        return candidate

    def _fail(self, asset_id: str, exc: Exception, result: ScanResult) -> None:
        result.errors += 1
        self.state.increment("errors")
        logger.error(f"Error processing {asset_id}: {exc}")
        self._emit(ItemFailed(asset_id, str(exc), exc))

    def _skip(self, candidate: Candidate, reason: str, result: ScanResult) -> None:
        result.photos_skipped += 1
        self.state.increment("skipped")
        self.state.mark_processed(candidate.photo.id)
        self._emit(ItemProcessed(candidate.photo.id, candidate.classification, candidate.extraction, None, reason))

    def _finish(self, candidate: Candidate, result: ScanResult) -> None:
        photo = candidate.photo
        if candidate.error is not None:
            self._fail(photo.id, candidate.error, result)
            return
        if candidate.extraction is None:
            self._skip(candidate, candidate.classification.reason, result)
            return

        result.photos_extracted += 1
        extraction = candidate.extraction
        if extraction.is_skip:
            logger.info(f"Skipped by rules: {photo.id}")
            self._skip(candidate, "Skipped by rules", result)
            return

        try:
            path = self.writer.write(extraction, photo.creation_time, photo.id)
        except Exception as exc:
            self._fail(photo.id, exc, result)
            return

        result.photos_written += 1
        self.state.increment("written")
        self.state.mark_processed(photo.id)
        logger.info(f"Processed: {path}")
        self._emit(ItemProcessed(photo.id, candidate.classification, extraction, path))


def watch(
    pipeline: ProcessingPipeline,
    interval_seconds: float,
    stop_event: threading.Event,
    on_result: Callable[[ScanResult], None] | None = None,
) -> int:
    """Run scan cycles until ``stop_event`` is set. Returns the number of cycles run.

    Setting the event interrupts the wait between cycles but never a cycle in
    progress; each cycle saves state before returning.
    """
    cycles = 0
    while not stop_event.is_set():
        result = pipeline.run_scan()
        cycles += 1
        if on_result is not None:
            on_result(result)
        if stop_event.wait(interval_seconds):
            break
    return cycles
