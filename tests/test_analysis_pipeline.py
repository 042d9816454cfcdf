"""Tests for the media analysis pipeline."""

import threading
import time
from pathlib import Path

import pytest
from fakes import FakeTools

from lecture_uploader.services.analysis_pipeline import AnalysisPipeline
from lecture_uploader.services.cache_service import FingerprintCache
from lecture_uploader.services.concurrency import ConcurrencyLimiter
from lecture_uploader.services.errors import NotFoundError
from lecture_uploader.services.media_service import DetectionMethod, MediaTools, TimestampStatus

FFPROBE_SCRIPT = """#!/bin/sh
case "$*" in
  *format=duration*) echo 780.0 ;;
  *) echo '{"streams": [{"width": 1920, "height": 1080, "r_frame_rate": "30/1"}]}' ;;
esac
"""

# Metadata tags in a legacy encoding, as ffmpeg echoes them to stderr
FFMPEG_LATIN1_SCRIPT = """#!/bin/sh
printf '\\377\\376 Title: \\351t\\351\\n' >&2
exit 0
"""


def _pipeline(
    cache: FingerprintCache, tools: FakeTools, tmp_path: Path, log_service, capacity: int = 2
) -> AnalysisPipeline:
    return AnalysisPipeline(
        cache,
        tools,  # type: ignore[arg-type]
        ConcurrencyLimiter(capacity),
        log_service=log_service,
        flags_path=tmp_path / "data" / "manual-flags.json",
    )


class TestOverrides:
    """Tests for the manual flag and filename short-circuits."""

    def test_filename_heuristic_skips_tools(
        self, pipeline: AnalysisPipeline, tools: FakeTools, tmp_path: Path
    ) -> None:
        path = tmp_path / "week3_timebolted.mp4"
        path.write_bytes(b"data")

        result = pipeline.analyze(path)

        assert result.classified is True
        assert result.detection_method == DetectionMethod.FILENAME
        assert result.timestamp_status == TimestampStatus.SKIPPED
        assert tools.total_calls == 0

    def test_manual_flag_skips_tools(
        self, pipeline: AnalysisPipeline, tools: FakeTools, media_file: Path
    ) -> None:
        pipeline.set_manual_flag(media_file, True)
        result = pipeline.analyze(media_file)

        assert result.detection_method == DetectionMethod.MANUAL
        assert result.classified is True
        assert tools.total_calls == 0

    def test_unflag_restores_analysis(
        self, pipeline: AnalysisPipeline, tools: FakeTools, media_file: Path
    ) -> None:
        pipeline.set_manual_flag(media_file, True)
        pipeline.set_manual_flag(media_file, False)

        assert pipeline.manual_flags() == {}
        assert pipeline.analyze(media_file).detection_method == DetectionMethod.CONTENT_ANALYSIS

    def test_missing_file_raises(self, pipeline: AnalysisPipeline, tmp_path: Path) -> None:
        with pytest.raises(NotFoundError):
            pipeline.analyze(tmp_path / "missing.mp4")


class TestContentAnalysis:
    """Tests for the uncached path through the external tools."""

    def test_full_result(self, pipeline: AnalysisPipeline, media_file: Path) -> None:
        """Test classification, duration and both timestamps on a clean run."""
        result = pipeline.analyze(media_file)

        assert result.detection_method == DetectionMethod.CONTENT_ANALYSIS
        assert result.classified is True
        assert result.duration == "13m"
        assert result.duration_seconds == 780.0
        assert result.recording_start == "2024-03-05 14:22"
        assert result.recording_end == "2024-03-05 14:35"
        assert result.timestamp_status == TimestampStatus.FOUND
        assert result.size_bytes == media_file.stat().st_size
        assert result.errors == []

    def test_silences_mean_not_time_compressed(
        self, cache: FingerprintCache, tmp_path: Path, log_service, media_file: Path
    ) -> None:
        tools = FakeTools(silences=2)
        assert _pipeline(cache, tools, tmp_path, log_service).analyze(media_file).classified is False

    def test_first_valid_frame_wins(
        self, cache: FingerprintCache, tmp_path: Path, log_service, media_file: Path
    ) -> None:
        """Test that frames are tried in order and scanning stops at the first clock."""
        tools = FakeTools(
            start_texts={0: "", 3: "garbage", 7: "2O24-O3-O5 l4:22:1O", 10: "2024-03-05 14:22:11"},
            end_text="2024-03-05 14:35:02",
        )
        result = _pipeline(cache, tools, tmp_path, log_service).analyze(media_file)

        assert result.recording_start == "2024-03-05 14:22"
        # three start frames, then the first end frame
        assert tools.calls["ocr"] == 4

    def test_no_clock_is_not_found(
        self, cache: FingerprintCache, tmp_path: Path, log_service, media_file: Path
    ) -> None:
        tools = FakeTools(start_texts={})
        result = _pipeline(cache, tools, tmp_path, log_service).analyze(media_file)

        assert result.timestamp_status == TimestampStatus.NOT_FOUND
        assert result.recording_start is None
        assert result.errors == []

    def test_timestamp_failure_keeps_classification(
        self, cache: FingerprintCache, tmp_path: Path, log_service, media_file: Path
    ) -> None:
        """Test that an OCR failure yields a partial result, not a lost classification."""
        tools = FakeTools(failing={"ocr"})
        result = _pipeline(cache, tools, tmp_path, log_service).analyze(media_file)

        assert result.classified is True
        assert result.duration == "13m"
        assert result.timestamp_status == TimestampStatus.FAILED
        assert result.is_partial
        assert any(e.startswith("start timestamp") for e in result.errors)

    def test_classification_failure_is_isolated(
        self, cache: FingerprintCache, tmp_path: Path, log_service, media_file: Path
    ) -> None:
        tools = FakeTools(failing={"silence"}, start_texts={0: "2024-03-05 14:22:10"})
        result = _pipeline(cache, tools, tmp_path, log_service).analyze(media_file)

        assert result.classified is False
        assert result.recording_start == "2024-03-05 14:22"
        assert result.errors == ["classification: silence failed"]

    def test_stream_probe_failure(
        self, cache: FingerprintCache, tmp_path: Path, log_service, media_file: Path
    ) -> None:
        tools = FakeTools(failing={"stream"})
        result = _pipeline(cache, tools, tmp_path, log_service).analyze(media_file)

        assert result.timestamp_status == TimestampStatus.FAILED
        assert tools.calls["ocr"] == 0


class TestCaching:
    """Tests for cache reuse and invalidation."""

    def test_cache_hit_means_zero_tool_calls(
        self, pipeline: AnalysisPipeline, tools: FakeTools, media_file: Path
    ) -> None:
        first = pipeline.analyze(media_file)
        calls = tools.total_calls

        second = pipeline.analyze(media_file)

        assert tools.total_calls == calls
        assert second.detection_method == DetectionMethod.CACHED
        assert second.recording_start == first.recording_start

    def test_fingerprint_change_reruns_and_overwrites(
        self,
        pipeline: AnalysisPipeline,
        tools: FakeTools,
        cache: FingerprintCache,
        media_file: Path,
    ) -> None:
        """Test that editing the file re-runs the tools and replaces the entry."""
        pipeline.analyze(media_file)
        old_fingerprint = cache.get_entry(media_file)["fingerprint"]
        calls = tools.calls["silence"]

        media_file.write_bytes(b"re-exported recording")
        result = pipeline.analyze(media_file)

        assert result.detection_method == DetectionMethod.CONTENT_ANALYSIS
        assert tools.calls["silence"] == calls + 1
        assert cache.get_entry(media_file)["fingerprint"] != old_fingerprint

    def test_partial_results_are_cached(
        self, cache: FingerprintCache, tmp_path: Path, log_service, media_file: Path
    ) -> None:
        tools = FakeTools(failing={"ocr"})
        pipeline = _pipeline(cache, tools, tmp_path, log_service)
        pipeline.analyze(media_file)
        calls = tools.total_calls

        cached = pipeline.analyze(media_file)

        assert tools.total_calls == calls
        assert cached.timestamp_status == TimestampStatus.FAILED

    def test_force_reruns_tools(
        self, pipeline: AnalysisPipeline, tools: FakeTools, media_file: Path
    ) -> None:
        pipeline.analyze(media_file)
        pipeline.analyze(media_file, force=True)

        assert tools.calls["silence"] == 2


class TestConcurrency:
    """Tests for request coalescing and bounding."""

    def test_concurrent_requests_share_one_analysis(
        self, pipeline: AnalysisPipeline, tools: FakeTools, media_file: Path
    ) -> None:
        tools.gate = threading.Event()
        results = []

        threads = [
            threading.Thread(target=lambda: results.append(pipeline.analyze(media_file)))
            for _ in range(2)
        ]
        for t in threads:
            t.start()
        time.sleep(0.1)
        tools.gate.set()
        for t in threads:
            t.join(5)

        assert tools.calls["silence"] == 1
        assert len(results) == 2
        assert results[0].recording_start == results[1].recording_start
        assert len(pipeline.inflight) == 0

    def test_limiter_bounds_distinct_files(
        self, cache: FingerprintCache, tmp_path: Path, log_service
    ) -> None:
        """Test that no more than the limiter capacity run the tools at once."""
        tools = FakeTools()
        running = 0
        peak = 0
        lock = threading.Lock()
        original = tools.count_leading_silences

        def slow_silences(path, seconds=5.0):
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            time.sleep(0.05)
            with lock:
                running -= 1
            return original(path, seconds)

        tools.count_leading_silences = slow_silences  # type: ignore[method-assign]
        pipeline = _pipeline(cache, tools, tmp_path, log_service, capacity=2)

        paths = []
        for i in range(5):
            path = tmp_path / f"lecture_{i}.mp4"
            path.write_bytes(f"recording {i}".encode())
            paths.append(path)

        results = pipeline.analyze_many(paths, max_workers=5)

        assert len(results) == 5
        assert peak <= 2

    def test_analyze_many_skips_missing_and_prunes(
        self, pipeline: AnalysisPipeline, cache: FingerprintCache, tmp_path: Path
    ) -> None:
        kept = tmp_path / "kept.mp4"
        removed = tmp_path / "removed.mp4"
        kept.write_bytes(b"kept")
        removed.write_bytes(b"removed")
        pipeline.analyze(removed)
        removed.unlink()

        results = pipeline.analyze_many([kept, tmp_path / "never-existed.mp4"])

        assert list(results) == [cache.resource_key(kept)]
        assert cache.get_entry(removed) is None

    def test_limiter_status(self, pipeline: AnalysisPipeline) -> None:
        status = pipeline.limiter_status()
        assert status["capacity"] == 2
        assert status["running"] == 0
        assert status["in_flight"] == 0

    def test_analyze_many_survives_failing_file(
        self, cache: FingerprintCache, tmp_path: Path, log_service
    ) -> None:
        """Test that one file failing outright neither stops the sweep nor skips pruning."""

        class BrokenForOneFile(FakeTools):
            def count_leading_silences(self, path, seconds=5.0):
                if Path(path).name == "broken.mp4":
                    raise OSError("Input/output error")
                return super().count_leading_silences(path, seconds)

        pipeline = _pipeline(cache, BrokenForOneFile(), tmp_path, log_service)
        good = tmp_path / "good.mp4"
        broken = tmp_path / "broken.mp4"
        gone = tmp_path / "gone.mp4"
        for path in (good, broken, gone):
            path.write_bytes(path.name.encode())
        pipeline.analyze(gone)
        gone.unlink()

        results = pipeline.analyze_many([good, broken])

        assert list(results) == [cache.resource_key(good)]
        assert cache.get_entry(gone) is None
        sweep = log_service.read_log_entries(search="analysis_sweep_completed")["entries"]
        assert sweep[0]["metadata"]["failed"] == 1


class TestExternalToolFailures:
    """Tests running the real MediaTools against stand-in tool scripts."""

    @pytest.fixture
    def ffprobe(self, tmp_path: Path) -> Path:
        path = tmp_path / "bin" / "ffprobe"
        path.parent.mkdir(exist_ok=True)
        path.write_text(FFPROBE_SCRIPT)
        path.chmod(0o755)
        return path

    def _tools_pipeline(
        self, cache: FingerprintCache, tmp_path: Path, log_service, ffmpeg: Path, ffprobe: Path
    ) -> AnalysisPipeline:
        tools = MediaTools(
            ffmpeg=str(ffmpeg),
            ffprobe=str(ffprobe),
            tesseract=str(tmp_path / "bin" / "tesseract"),
            timeout=10,
            temp_dir=tmp_path,
        )
        return AnalysisPipeline(
            cache,
            tools,
            ConcurrencyLimiter(1),
            log_service=log_service,
            flags_path=tmp_path / "data" / "manual-flags.json",
        )

    def test_undecodable_tool_output(
        self, cache: FingerprintCache, tmp_path: Path, log_service, ffprobe: Path, media_file: Path
    ) -> None:
        """Test that non-UTF-8 stderr is tolerated and the classification kept."""
        ffmpeg = tmp_path / "bin" / "ffmpeg"
        ffmpeg.write_text(FFMPEG_LATIN1_SCRIPT)
        ffmpeg.chmod(0o755)

        result = self._tools_pipeline(cache, tmp_path, log_service, ffmpeg, ffprobe).analyze(
            media_file
        )

        assert result.classified is True
        assert result.duration == "13m"
        # the stand-in writes no frame image, so the clock cannot be read
        assert result.timestamp_status == TimestampStatus.FAILED
        assert not any(e.startswith("classification") for e in result.errors)
        assert cache.get_entry(media_file) is not None

    def test_tool_without_execute_permission(
        self, cache: FingerprintCache, tmp_path: Path, log_service, ffprobe: Path, media_file: Path
    ) -> None:
        """Test that a tool which cannot be executed yields a partial result."""
        ffmpeg = tmp_path / "bin" / "ffmpeg"
        ffmpeg.write_text(FFMPEG_LATIN1_SCRIPT)
        ffmpeg.chmod(0o644)

        result = self._tools_pipeline(cache, tmp_path, log_service, ffmpeg, ffprobe).analyze(
            media_file
        )

        assert result.classified is False
        assert result.duration == "13m"
        assert result.is_partial
        assert any(
            e.startswith("classification:") and "could not be run" in e for e in result.errors
        )
