"""Analysis run orchestration: sample frames, extract detections, cluster."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from castscan.attribution.aggregate import IdentitySummary, enrich_identities
from castscan.clustering.engine import ClusteringSession
from castscan.config import AnalysisConfig
from castscan.errors import ExtractionTimeout, ModelUnavailable
from castscan.types import Detection

LOGGER = logging.getLogger("castscan.analyze")

ProgressCallback = Callable[["RunProgress"], None]


class DetectionSource(Protocol):
    """External collaborator that seeks to a timestamp and returns face detections."""

    def load(self) -> None:
        ...

    def extract(self, timestamp: float) -> Sequence[Detection]:
        ...


@dataclass
class FrameFailure:
    timestamp: float
    reason: str
    error: Optional[BaseException] = None


@dataclass
class RunProgress:
    frames_done: int
    frames_total: int
    identities: int
    detections: int

    @property
    def fraction(self) -> float:
        return self.frames_done / self.frames_total if self.frames_total else 1.0


@dataclass
class RunReport:
    """Outcome of one analysis run."""

    identities: List[IdentitySummary] = field(default_factory=list)
    frames_attempted: int = 0
    frames_with_detections: int = 0
    detections: int = 0
    failures: List[FrameFailure] = field(default_factory=list)
    cancelled: bool = False
    advisory: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def success_rate(self) -> float:
        if not self.frames_attempted:
            return 0.0
        return self.frames_with_detections / self.frames_attempted

    def to_dict(self) -> dict:
        return {
            "frames_attempted": self.frames_attempted,
            "frames_with_detections": self.frames_with_detections,
            "detections": self.detections,
            "success_rate": self.success_rate,
            "cancelled": self.cancelled,
            "advisory": self.advisory,
            "elapsed_seconds": self.elapsed_seconds,
            "failures": [{"timestamp": f.timestamp, "reason": f.reason} for f in self.failures],
        }


def sample_timestamps(
    duration_seconds: float,
    interval_seconds: float,
    max_samples: Optional[int] = None,
) -> List[float]:
    """Timestamps ``0, interval, 2*interval, ...`` strictly before ``duration``.

    With ``max_samples`` the samples are instead spread evenly over the whole
    duration (first and last frame included).
    """
    if duration_seconds <= 0:
        return []
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    count = int(np.ceil(duration_seconds / interval_seconds))
    stamps = [round(i * interval_seconds, 6) for i in range(count)]
    stamps = [t for t in stamps if t < duration_seconds]
    if max_samples is not None and 0 < max_samples < len(stamps):
        if max_samples == 1:
            return [0.0]
        return [float(t) for t in np.linspace(0.0, duration_seconds, max_samples)]
    return stamps


class AnalysisRunner:
    """Drives a detection source over sampled timestamps into a clustering session.

    Frame extraction runs on one background worker so each frame can be
    abandoned after ``frame_timeout_seconds``; clustering itself stays on the
    calling thread. One run per session at a time.

    An abandoned extraction keeps the worker until it returns, and frames sampled
    meanwhile are skipped as ``busy``; ``extract`` is never entered concurrently.
    A source that never returns pins the worker thread (and interpreter exit),
    so sources should bound their own seeks.
    """

    def __init__(
        self,
        source: DetectionSource,
        config: Optional[AnalysisConfig] = None,
        session: Optional[ClusteringSession] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.source = source
        self.config = config or (session.config if session is not None else AnalysisConfig())
        self.session = session if session is not None else ClusteringSession(self.config)
        self.progress = progress
        self._cancel = threading.Event()
        self._loaded = False

    def cancel(self) -> None:
        """Stop after the frame currently in flight; partial identities are kept."""
        LOGGER.info("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _ensure_source(self) -> None:
        if self._loaded:
            return
        try:
            self.source.load()
        except Exception as exc:
            LOGGER.error("Detection source failed to initialize: %s", exc)
            raise ModelUnavailable(f"Detection source failed to initialize: {exc}", cause=exc) from exc
        self._loaded = True

    def _extract(self, future: Future, timestamp: float) -> List[Detection]:
        try:
            return list(future.result(timeout=self.config.frame_timeout_seconds))
        except FutureTimeout:
            raise ExtractionTimeout(timestamp, self.config.frame_timeout_seconds) from None

    def _worker_free(self, pending: Future) -> bool:
        """Give an abandoned extraction one more deadline to return."""
        wait([pending], timeout=self.config.frame_timeout_seconds)
        return pending.done()

    def run(
        self,
        duration_seconds: float,
        frame_size: Optional[Tuple[int, int]] = None,
        timestamps: Optional[Sequence[float]] = None,
    ) -> RunReport:
        """Analyze one video and return enriched identities.

        Raises :class:`ModelUnavailable` before any frame is touched when the
        source cannot load, and :class:`AnalysisInProgress` when another run
        holds the session. Every other per-frame problem is logged and skipped.
        """
        with self.session.analysis_run():
            self._ensure_source()
            self._cancel.clear()
            report = self._run_frames(duration_seconds, timestamps)
            self.session.refresh()

        report.identities = enrich_identities(self.session.identities, self.config, frame_size)
        if report.frames_attempted and report.success_rate < self.config.min_success_rate:
            report.advisory = (
                f"Only {report.frames_with_detections}/{report.frames_attempted} sampled frames "
                f"({report.success_rate:.0%}) produced detections; identities may be incomplete"
            )
            LOGGER.warning(report.advisory)
        LOGGER.info(
            "Analysis %s: %d identities from %d detections across %d/%d frames in %.2fs",
            "cancelled" if report.cancelled else "complete",
            len(report.identities),
            report.detections,
            report.frames_with_detections,
            report.frames_attempted,
            report.elapsed_seconds,
        )
        return report

    def _run_frames(self, duration_seconds: float, timestamps: Optional[Sequence[float]]) -> RunReport:
        if timestamps is None:
            stamps = sample_timestamps(
                duration_seconds, self.config.sampling_interval_seconds, self.config.max_samples
            )
        else:
            stamps = sorted(float(t) for t in timestamps)
        report = RunReport()
        if not stamps:
            LOGGER.info("No frames to sample (duration=%.2fs); returning empty identity list", duration_seconds)
            return report

        LOGGER.info(
            "Sampling %d frames (interval=%.2fs, timeout=%.1fs, threshold=%.3f)",
            len(stamps),
            self.config.sampling_interval_seconds,
            self.config.frame_timeout_seconds,
            self.config.match_threshold,
        )
        started = time.monotonic()
        # One worker: seeking is sequential, a hung extraction must not be overlapped.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="castscan-extract")
        pending: Optional[Future] = None
        pending_at = 0.0
        try:
            for frame_no, timestamp in enumerate(stamps, start=1):
                if self._cancel.is_set():
                    report.cancelled = True
                    LOGGER.info("Run cancelled after %d/%d frames", frame_no - 1, len(stamps))
                    break
                report.frames_attempted += 1
                if pending is not None and not self._worker_free(pending):
                    LOGGER.warning(
                        "Skipping frame at t=%.3f: extraction of t=%.3f is still running", timestamp, pending_at
                    )
                    report.failures.append(FrameFailure(timestamp, "busy"))
                else:
                    pending = None
                    future = executor.submit(self.source.extract, timestamp)
                    try:
                        detections = self._extract(future, timestamp)
                    except ExtractionTimeout as exc:
                        LOGGER.warning("Skipping frame: %s", exc)
                        report.failures.append(FrameFailure(timestamp, "timeout", exc))
                        pending, pending_at = future, timestamp
                    except Exception as exc:
                        LOGGER.warning("Skipping frame at t=%.3f: extraction failed (%s)", timestamp, exc)
                        LOGGER.debug("Extraction failure stack trace", exc_info=True)
                        report.failures.append(FrameFailure(timestamp, "error", exc))
                    else:
                        self._assign_frame(report, timestamp, detections)

                if self.progress is not None:
                    self.progress(
                        RunProgress(
                            frames_done=frame_no,
                            frames_total=len(stamps),
                            identities=len(self.session),
                            detections=report.detections,
                        )
                    )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        if pending is not None and not pending.done():
            LOGGER.warning("Extraction of t=%.3f was still running when the run ended", pending_at)
        report.elapsed_seconds = time.monotonic() - started
        return report

    def _assign_frame(self, report: RunReport, timestamp: float, detections: Sequence[Detection]) -> None:
        if detections:
            report.frames_with_detections += 1
        for detection in sorted(detections, key=lambda d: d.timestamp):
            if detection.timestamp != timestamp:
                LOGGER.debug("Detection timestamp %.3f differs from sampled %.3f", detection.timestamp, timestamp)
            self.session.assign(detection)
            report.detections += 1
