"""Media analysis pipeline with caching, bounding and request coalescing.

Each step short-circuits: a manual or filename override skips every tool, a
cache hit skips the tools, and concurrent requests for the same file share one
run. Only the uncached path touches ffmpeg/ffprobe/tesseract, and it does so
while holding a limiter slot.
"""

import json
import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from lecture_uploader.services.cache_service import FingerprintCache
from lecture_uploader.services.concurrency import ConcurrencyLimiter, InFlightMap
from lecture_uploader.services.errors import NotFoundError, UnparseableMediaError, UploaderError
from lecture_uploader.services.log_service import LogService, get_log_service
from lecture_uploader.services.media_service import (
    FRAME_CANDIDATES,
    TIME_COMPRESSED_NAME,
    AnalysisResult,
    DetectionMethod,
    MediaTools,
    TimestampStatus,
    VideoStream,
    clean_ocr_text,
    format_fuzzy_duration,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

MANUAL_FLAGS_FILE = "manual-flags.json"


class AnalysisPipeline:
    """Produces an AnalysisResult per media file, reusing work wherever possible."""

    def __init__(
        self,
        cache: FingerprintCache,
        tools: MediaTools,
        limiter: ConcurrencyLimiter,
        inflight: InFlightMap[AnalysisResult] | None = None,
        log_service: LogService | None = None,
        flags_path: Path | str | None = None,
        year_range: tuple[int, int] = (2020, 2030),
    ) -> None:
        self.cache = cache
        self.tools = tools
        self.limiter = limiter
        self.inflight: InFlightMap[AnalysisResult] = inflight or InFlightMap()
        self.log = log_service or get_log_service()
        self.flags_path = Path(flags_path) if flags_path else Path(MANUAL_FLAGS_FILE)
        self.year_range = year_range
        self._flags_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Manual flags
    # ------------------------------------------------------------------

    def manual_flags(self) -> dict[str, bool]:
        with self._flags_lock:
            return self._read_flags()

    def _read_flags(self) -> dict[str, bool]:
        if not self.flags_path.exists():
            return {}
        try:
            with open(self.flags_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.warning("Unreadable manual flag file: %s", self.flags_path, exc_info=True)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): bool(v) for k, v in data.items()}

    def set_manual_flag(self, resource: Path | str, flagged: bool) -> None:
        """Mark (or unmark) a file as already time-compressed."""
        key = self.cache.resource_key(resource)
        with self._flags_lock:
            flags = self._read_flags()
            if flagged:
                flags[key] = True
            else:
                flags.pop(key, None)
            self.flags_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.flags_path, "w", encoding="utf-8") as f:
                json.dump(flags, f, indent=2)

        self.log.info(
            "analysis",
            "manual_flag_set",
            f"{'Flagged' if flagged else 'Unflagged'} {Path(resource).name}",
            {"resource": key, "flagged": flagged},
        )

    def _override_method(self, path: Path) -> DetectionMethod | None:
        if self.manual_flags().get(self.cache.resource_key(path)):
            return DetectionMethod.MANUAL
        if TIME_COMPRESSED_NAME.search(path.name):
            return DetectionMethod.FILENAME
        return None

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, resource: Path | str, force: bool = False) -> AnalysisResult:
        """Analyze one media file.

        Args:
            resource: Path of the media file
            force: Ignore a valid cache entry and run the tools again

        Raises:
            NotFoundError: If the file does not exist
        """
        path = Path(resource)
        if not path.is_file():
            raise NotFoundError(f"Media file not found: {path}")
        size_bytes = path.stat().st_size

        method = self._override_method(path)
        if method is not None:
            return AnalysisResult(classified=True, detection_method=method, size_bytes=size_bytes)

        fingerprint = self.cache.compute_fingerprint(path)
        if not force:
            cached = self.cache.lookup(path, fingerprint)
            if cached is not None:
                return replace(cached, detection_method=DetectionMethod.CACHED)

        key = self.cache.resource_key(path)
        return self.inflight.run(
            key, lambda: self._analyze_uncached(path, fingerprint, size_bytes, force)
        )

    def _analyze_uncached(
        self, path: Path, fingerprint: str, size_bytes: int, force: bool
    ) -> AnalysisResult:
        # A run that settled between our lookup and becoming leader already cached it
        if not force:
            cached = self.cache.lookup(path, fingerprint)
            if cached is not None:
                return replace(cached, detection_method=DetectionMethod.CACHED)

        with self.limiter.slot(label=path.name):
            result = self._run_tools(path, size_bytes)

        self.cache.put(path, fingerprint, result)

        metadata: dict[str, Any] = {
            "resource": str(path),
            "classified": result.classified,
            "timestamp_status": result.timestamp_status.value,
        }
        if result.is_partial:
            metadata["errors"] = result.errors
            self.log.warning(
                "analysis",
                "analysis_partial",
                f"Partial analysis for {path.name}: {len(result.errors)} step(s) failed",
                metadata,
            )
        else:
            self.log.info("analysis", "analysis_completed", f"Analyzed {path.name}", metadata)
        return result

    def _run_tools(self, path: Path, size_bytes: int) -> AnalysisResult:
        errors: list[str] = []

        classified = False
        try:
            classified = self.tools.count_leading_silences(path) == 0
        except UnparseableMediaError as e:
            errors.append(f"classification: {e}")

        duration_seconds: float | None = None
        try:
            duration_seconds = self.tools.probe_duration(path)
        except UnparseableMediaError as e:
            errors.append(f"duration: {e}")

        start, end, status = self._extract_timestamps(path, duration_seconds, errors)

        return AnalysisResult(
            classified=classified,
            detection_method=DetectionMethod.CONTENT_ANALYSIS,
            size_bytes=size_bytes,
            recording_start=format_timestamp(start) if start else None,
            recording_end=format_timestamp(end) if end else None,
            duration=format_fuzzy_duration(duration_seconds) if duration_seconds else None,
            duration_seconds=duration_seconds,
            timestamp_status=status,
            errors=errors,
        )

    def _extract_timestamps(
        self, path: Path, duration_seconds: float | None, errors: list[str]
    ) -> tuple[datetime | None, datetime | None, TimestampStatus]:
        try:
            stream = self.tools.probe_video_stream(path)
        except UnparseableMediaError as e:
            errors.append(f"timestamp: {e}")
            return None, None, TimestampStatus.FAILED

        start, all_failed = self._scan_frames(
            path, stream, lambda n: {"frame_index": n}, "start timestamp", errors
        )
        if start is None:
            return None, None, TimestampStatus.FAILED if all_failed else TimestampStatus.NOT_FOUND

        end = None
        if duration_seconds and stream.fps > 0:
            fps = stream.fps
            end, _ = self._scan_frames(
                path,
                stream,
                lambda n: {"seek_seconds": max(0.0, duration_seconds - (n + 1) / fps)},
                "end timestamp",
                errors,
            )
        return start, end, TimestampStatus.FOUND

    def _scan_frames(
        self,
        path: Path,
        stream: VideoStream,
        locate: Callable[[int], dict[str, Any]],
        step: str,
        errors: list[str],
    ) -> tuple[datetime | None, bool]:
        """Try each candidate frame in order, stopping at the first valid clock.

        Returns:
            (timestamp or None, whether every candidate failed to decode)
        """
        failures = 0
        last_error: UnparseableMediaError | None = None
        for n in FRAME_CANDIDATES:
            try:
                text = self.tools.read_frame_text(path, stream, **locate(n))
            except UnparseableMediaError as e:
                failures += 1
                last_error = e
                continue
            timestamp = parse_timestamp(clean_ocr_text(text), self.year_range)
            if timestamp is not None:
                logger.debug("Found %s in %s at frame offset %d", step, path.name, n)
                return timestamp, False

        if failures:
            errors.append(f"{step}: {failures}/{len(FRAME_CANDIDATES)} frames failed ({last_error})")
        return None, failures == len(FRAME_CANDIDATES)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def analyze_many(
        self,
        resources: Iterable[Path | str],
        max_workers: int | None = None,
    ) -> dict[str, AnalysisResult]:
        """Analyze a batch of files in a thread pool and prune stale cache entries.

        Missing files are skipped and a file that fails outright is logged and
        counted, so one bad file never stops the sweep. The limiter still bounds how many run the
        external tools at once.

        Returns:
            Mapping of absolute path to result for every file analyzed
        """
        paths = [Path(r) for r in resources]
        results: dict[str, AnalysisResult] = {}
        skipped = 0
        failed = 0

        with ThreadPoolExecutor(max_workers=max_workers or self.limiter.capacity) as executor:
            futures = {executor.submit(self.analyze, path): path for path in paths}
            for future in as_completed(futures):
                path = futures[future]
                try:
                    results[self.cache.resource_key(path)] = future.result()
                except NotFoundError:
                    skipped += 1
                except (UploaderError, OSError):
                    logger.warning("Sweep failed to analyze %s", path, exc_info=True)
                    failed += 1

        pruned = self.cache.prune_missing()

        self.log.info(
            "analysis",
            "analysis_sweep_completed",
            f"Analyzed {len(results)} files",
            {"analyzed": len(results), "skipped": skipped, "failed": failed, "pruned": pruned},
        )
        return results

    def limiter_status(self) -> dict[str, Any]:
        status = self.limiter.status().to_dict()
        status["in_flight"] = len(self.inflight)
        return status
