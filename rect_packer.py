#!/usr/bin/env python3
"""
Suggest axis-aligned rectangles that fit inside the usable area of a scrap mask.

Pipeline (one call of pack_rectangles):
 1) Coerce the caller's mask into a (height, width) intensity grid and derive
    independent x/y pixel-per-mm ratios from the physical board size
 2) Build every candidate rectangle size from the min/max/step/orientation
    settings, largest area first
 3) Scan anchors top-to-bottom, left-to-right on a step-sized grid; at each
    free anchor accept the first candidate that fits the mask, does not touch
    earlier placements (including their gap margin) and covers enough
    usable material
 4) Report throttled progress and yield to the event loop every few rows so a
    UI thread stays responsive; stop early when cancelled or when the shape cap
    is reached

A cell is usable ("free") when its intensity is above FREE_THRESHOLD. Purity is
always measured against the untouched mask; placement conflicts are tracked on
a separate working copy.

Example:
    config = PackingConfig(max_width_mm=100, max_height_mm=50, gap_mm=0)
    rects = asyncio.run(pack_rectangles(mask, 600, 400, 150.0, 100.0, config))
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

FREE_THRESHOLD = 200
ORIENTATIONS = ("landscape", "portrait", "both")

# Rounding precision for candidate values and dedupe keys
RANGE_DECIMALS = 4
KEY_DECIMALS = 3


class PackingInputError(ValueError):
    """Mask or physical dimensions are unusable; raised before any scanning."""


@dataclass(frozen=True)
class PackingConfig:
    max_width_mm: float = 100.0
    max_height_mm: float = 50.0
    min_width_mm: float = 20.0
    min_height_mm: float = 20.0
    step_mm: float = 10.0
    gap_mm: float = 5.0
    coverage_threshold: float = 0.95
    orientation: str = "both"  # 'landscape', 'portrait', 'both'
    max_shapes: int = 200
    progress_interval_rows: int = 5
    yield_after_rows: int = 20  # 0 disables the periodic yield

    @classmethod
    def clamped(
        cls,
        max_width_mm: float,
        max_height_mm: float,
        min_width_mm: Optional[float] = None,
        min_height_mm: Optional[float] = None,
        step_mm: Optional[float] = None,
        gap_mm: Optional[float] = None,
        coverage_threshold: Optional[float] = None,
        orientation: Optional[str] = None,
        max_shapes: Optional[int] = None,
        progress_interval_rows: Optional[int] = None,
        yield_after_rows: Optional[int] = None,
    ) -> "PackingConfig":
        """Coerce raw UI/CLI option values into a valid configuration."""
        d = cls()

        def pick(value, default):
            return default if value is None else value

        orient = pick(orientation, d.orientation)
        if orient not in ORIENTATIONS:
            logger.warning("Unknown orientation %r, using 'both'", orient)
            orient = "both"
        return cls(
            max_width_mm=max(float(max_width_mm), 1.0),
            max_height_mm=max(float(max_height_mm), 1.0),
            min_width_mm=max(float(pick(min_width_mm, d.min_width_mm)), 1.0),
            min_height_mm=max(float(pick(min_height_mm, d.min_height_mm)), 1.0),
            step_mm=max(float(pick(step_mm, d.step_mm)), 0.2),
            gap_mm=max(float(pick(gap_mm, d.gap_mm)), 0.0),
            coverage_threshold=min(max(float(pick(coverage_threshold, d.coverage_threshold)), 0.0), 1.0),
            orientation=orient,
            max_shapes=max(1, int(pick(max_shapes, d.max_shapes))),
            progress_interval_rows=max(1, round_half_up(pick(progress_interval_rows, d.progress_interval_rows))),
            yield_after_rows=max(0, round_half_up(pick(yield_after_rows, d.yield_after_rows))),
        )


@dataclass(frozen=True)
class PlacementSuggestion:
    x_mm: float
    y_mm: float
    width_mm: float
    height_mm: float

    @property
    def area_mm2(self) -> float:
        return self.width_mm * self.height_mm

    def to_dict(self) -> dict:
        return {"x_mm": self.x_mm, "y_mm": self.y_mm, "width_mm": self.width_mm, "height_mm": self.height_mm}


@dataclass(frozen=True)
class ProgressSnapshot:
    progress: float
    processed_rows: int
    total_rows: int
    suggestion_count: int
    last_suggestion: Optional[PlacementSuggestion] = None

    def to_dict(self) -> dict:
        last = self.last_suggestion.to_dict() if self.last_suggestion is not None else None
        return {
            "progress": self.progress,
            "processed_rows": self.processed_rows,
            "total_rows": self.total_rows,
            "suggestions": self.suggestion_count,
            "last_suggestion": last,
        }


def round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


@dataclass(frozen=True)
class PhysicalScale:
    px_per_mm_x: float
    px_per_mm_y: float

    @classmethod
    def from_mask(cls, mask_width: int, mask_height: int, width_mm: float, height_mm: float) -> "PhysicalScale":
        return cls(mask_width / float(width_mm), mask_height / float(height_mm))

    def size_px(self, width_mm: float, height_mm: float) -> Tuple[int, int]:
        return (
            max(1, round_half_up(width_mm * self.px_per_mm_x)),
            max(1, round_half_up(height_mm * self.px_per_mm_y)),
        )

    def stride_px(self, step_mm: float) -> Tuple[int, int]:
        return (
            max(1, round_half_up(step_mm * self.px_per_mm_x)),
            max(1, round_half_up(step_mm * self.px_per_mm_y)),
        )

    def gap_px(self, gap_mm: float) -> Tuple[int, int]:
        return round_half_up(gap_mm * self.px_per_mm_x), round_half_up(gap_mm * self.px_per_mm_y)

    def to_suggestion(self, x: int, y: int, w: int, h: int) -> PlacementSuggestion:
        return PlacementSuggestion(
            x_mm=x / self.px_per_mm_x,
            y_mm=y / self.px_per_mm_y,
            width_mm=w / self.px_per_mm_x,
            height_mm=h / self.px_per_mm_y,
        )


# ---------------------------------------------------------------------------
# Candidate sizes
# ---------------------------------------------------------------------------

def build_descending_range(max_value: float, min_value: float, step: float) -> List[float]:
    if step <= 0:
        return sorted({max_value, min_value}, reverse=True)
    values: List[float] = []
    current = max_value
    while current >= min_value:
        values.append(round(current, RANGE_DECIMALS))
        current -= step
    min_rounded = round(min_value, RANGE_DECIMALS)
    if not values or values[-1] != min_rounded:
        values.append(min_rounded)
    return sorted(set(values), reverse=True)


def build_candidate_sizes(config: PackingConfig) -> List[Tuple[float, float]]:
    """All (width_mm, height_mm) pairs to try at an anchor, largest area first."""
    widths = build_descending_range(config.max_width_mm, config.min_width_mm, config.step_mm)
    heights = build_descending_range(config.max_height_mm, config.min_height_mm, config.step_mm)

    pairs: List[Tuple[float, float]] = []
    seen = set()

    def add(w: float, h: float) -> None:
        key = (round(w, KEY_DECIMALS), round(h, KEY_DECIMALS))
        if key not in seen:
            seen.add(key)
            pairs.append((w, h))

    for w in widths:
        for h in heights:
            if config.orientation == "landscape":
                add(w, h)
            elif config.orientation == "portrait":
                add(h, w)
            else:
                add(w, h)
                if w != h:
                    add(h, w)

    pairs.sort(key=lambda p: p[0] * p[1], reverse=True)
    return pairs


# ---------------------------------------------------------------------------
# Occupancy and coverage
# ---------------------------------------------------------------------------

class OccupancyTracker:
    """Reference mask plus the shrinking set of cells still open for placement."""

    def __init__(self, original: np.ndarray, gap_px_x: int = 0, gap_px_y: int = 0):
        self.original = np.array(original, dtype=bool)
        self.original.setflags(write=False)
        self.available = self.original.copy()
        self.height, self.width = self.original.shape
        self.gap_px_x = int(gap_px_x)
        self.gap_px_y = int(gap_px_y)

    @classmethod
    def from_intensities(cls, grid: np.ndarray, gap_px_x: int = 0, gap_px_y: int = 0) -> "OccupancyTracker":
        return cls(np.asarray(grid) > FREE_THRESHOLD, gap_px_x, gap_px_y)

    def _expanded(self, x: int, y: int, w: int, h: int) -> Tuple[int, int, int, int]:
        x0 = max(0, x - self.gap_px_x)
        y0 = max(0, y - self.gap_px_y)
        x1 = min(self.width, x + w + self.gap_px_x)
        y1 = min(self.height, y + h + self.gap_px_y)
        return x0, y0, x1, y1

    def is_anchor_free(self, x: int, y: int) -> bool:
        return bool(self.available[y, x])

    def is_area_free(self, x: int, y: int, w: int, h: int) -> bool:
        x0, y0, x1, y1 = self._expanded(x, y, w, h)
        return bool(self.available[y0:y1, x0:x1].all())

    def mark_used(self, x: int, y: int, w: int, h: int) -> None:
        x0, y0, x1, y1 = self._expanded(x, y, w, h)
        self.available[y0:y1, x0:x1] = False


class CoverageEvaluator:
    """Fraction of usable cells inside a rectangle of the reference mask.

    Backed by a summed-area table so each query is O(1). Coordinates must lie
    inside the grid.
    """

    def __init__(self, original: np.ndarray):
        self._sums = cv2.integral(np.ascontiguousarray(original, dtype=np.uint8))

    def free_cells(self, x: int, y: int, w: int, h: int) -> int:
        s = self._sums
        return int(s[y + h, x + w]) - int(s[y, x + w]) - int(s[y + h, x]) + int(s[y, x])

    def purity(self, x: int, y: int, w: int, h: int) -> float:
        area = w * h
        if area <= 0:
            return 0.0
        return self.free_cells(x, y, w, h) / float(area)


# ---------------------------------------------------------------------------
# Progress and cancellation
# ---------------------------------------------------------------------------

class PackingListener:
    """Observer for a running scan. Override the hooks you care about.

    on_progress may return an awaitable; the scanner awaits it before going on.
    on_rectangle_added is called synchronously for every accepted placement.
    """

    def on_progress(self, snapshot: ProgressSnapshot) -> Any:
        return None

    def on_rectangle_added(self, suggestion: PlacementSuggestion) -> None:
        return None


class CallbackListener(PackingListener):
    def __init__(
        self,
        on_progress: Optional[Callable[[ProgressSnapshot], Any]] = None,
        on_rectangle_added: Optional[Callable[[PlacementSuggestion], None]] = None,
    ):
        self._on_progress = on_progress
        self._on_rectangle_added = on_rectangle_added

    def on_progress(self, snapshot: ProgressSnapshot) -> Any:
        if self._on_progress is not None:
            return self._on_progress(snapshot)
        return None

    def on_rectangle_added(self, suggestion: PlacementSuggestion) -> None:
        if self._on_rectangle_added is not None:
            self._on_rectangle_added(suggestion)


class CancellationToken:
    """Cooperative stop flag, optionally backed by an external predicate."""

    def __init__(self, predicate: Optional[Callable[[], bool]] = None):
        self._predicate = predicate
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        return bool(self._predicate is not None and self._predicate())


class ProgressReporter:
    def __init__(self, listener: PackingListener, total_rows: int, interval_rows: int):
        self.listener = listener
        self.total_rows = total_rows
        self.interval_rows = max(1, interval_rows)

    async def report(self, processed_rows: int, suggestions: Sequence[PlacementSuggestion], force: bool = False) -> None:
        if not force and processed_rows % self.interval_rows != 0:
            return
        snapshot = ProgressSnapshot(
            progress=min(1.0, processed_rows / float(self.total_rows)),
            processed_rows=processed_rows,
            total_rows=self.total_rows,
            suggestion_count=len(suggestions),
            last_suggestion=suggestions[-1] if suggestions else None,
        )
        try:
            result = self.listener.on_progress(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Progress handler failed at row %d; scan continues", processed_rows, exc_info=True)


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------

class ScanState(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PlacementScanner:
    """Greedy row/column scan over a single mask. Runs once; build a new one to rescan."""

    def __init__(
        self,
        tracker: OccupancyTracker,
        evaluator: CoverageEvaluator,
        sizes: Sequence[Tuple[float, float]],
        config: PackingConfig,
        scale: PhysicalScale,
        listener: Optional[PackingListener] = None,
        token: Optional[CancellationToken] = None,
    ):
        self.tracker = tracker
        self.evaluator = evaluator
        self.sizes = list(sizes)
        self.config = config
        self.scale = scale
        self.listener = listener or PackingListener()
        self.token = token
        self.state = ScanState.IDLE
        self.suggestions: List[PlacementSuggestion] = []
        self.processed_rows = 0
        self.total_rows = 0
        self._cancelled = False

    def _should_stop(self) -> bool:
        if self.token is not None and self.token.is_cancelled():
            self._cancelled = True
        return self._cancelled

    def _try_anchor(self, x: int, y: int, pixel_sizes: Sequence[Tuple[int, int]]) -> Optional[PlacementSuggestion]:
        tracker = self.tracker
        for w, h in pixel_sizes:
            if x + w > tracker.width or y + h > tracker.height:
                continue
            if not tracker.is_area_free(x, y, w, h):
                continue
            if self.evaluator.purity(x, y, w, h) < self.config.coverage_threshold:
                continue
            suggestion = self.scale.to_suggestion(x, y, w, h)
            self.suggestions.append(suggestion)
            self.listener.on_rectangle_added(suggestion)
            tracker.mark_used(x, y, w, h)
            return suggestion
        return None

    async def run(self) -> List[PlacementSuggestion]:
        if self.state is not ScanState.IDLE:
            raise RuntimeError(f"Scanner already {self.state.value}; create a new one to rescan")
        self.state = ScanState.SCANNING
        try:
            await self._scan()
        except BaseException:
            self.state = ScanState.FAILED
            raise
        self.state = ScanState.CANCELLED if self._cancelled else ScanState.COMPLETED
        return list(self.suggestions)

    async def _scan(self) -> None:
        cfg = self.config
        width, height = self.tracker.width, self.tracker.height
        step_x, step_y = self.scale.stride_px(cfg.step_mm)
        pixel_sizes = [self.scale.size_px(w, h) for w, h in self.sizes]
        self.total_rows = max(1, math.ceil(height / step_y))
        reporter = ProgressReporter(self.listener, self.total_rows, cfg.progress_interval_rows)

        await reporter.report(self.processed_rows, self.suggestions, force=True)

        for y in range(0, height, step_y):
            if len(self.suggestions) >= cfg.max_shapes or self._should_stop():
                break
            for x in range(0, width, step_x):
                if len(self.suggestions) >= cfg.max_shapes or self._should_stop():
                    break
                if self.tracker.is_anchor_free(x, y):
                    self._try_anchor(x, y, pixel_sizes)

            self.processed_rows += 1
            await reporter.report(self.processed_rows, self.suggestions)
            if cfg.yield_after_rows > 0 and self.processed_rows % cfg.yield_after_rows == 0:
                await asyncio.sleep(0)
            if self._should_stop():
                break

        self.processed_rows = min(self.processed_rows, self.total_rows)
        await reporter.report(self.processed_rows, self.suggestions, force=True)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def as_intensity_grid(mask: Any, mask_width: int, mask_height: int) -> np.ndarray:
    if mask_width <= 0 or mask_height <= 0:
        raise PackingInputError(f"Mask dimensions must be positive, got {mask_width}x{mask_height}")
    if isinstance(mask, np.ndarray):
        arr = mask
    elif isinstance(mask, (bytes, bytearray, memoryview)):
        arr = np.frombuffer(mask, dtype=np.uint8)
    else:
        arr = np.asarray(mask)
    if arr.size != mask_width * mask_height:
        raise PackingInputError(
            f"Mask has {arr.size} cells but {mask_width}x{mask_height} = {mask_width * mask_height} were expected"
        )
    if arr.ndim == 2 and arr.shape != (mask_height, mask_width):
        raise PackingInputError(f"Mask shape {arr.shape} does not match ({mask_height}, {mask_width})")
    return arr.reshape(mask_height, mask_width)


def prepare_scan(
    mask: Any,
    mask_width: int,
    mask_height: int,
    width_mm: float,
    height_mm: float,
    config: Optional[PackingConfig] = None,
    listener: Optional[PackingListener] = None,
    token: Optional[CancellationToken] = None,
) -> PlacementScanner:
    """Validate inputs and build an idle scanner. Raises PackingInputError."""
    grid = as_intensity_grid(mask, mask_width, mask_height)
    if not width_mm > 0 or not height_mm > 0:
        raise PackingInputError(f"Physical size must be positive, got {width_mm} x {height_mm} mm")
    config = config or PackingConfig()
    scale = PhysicalScale.from_mask(mask_width, mask_height, width_mm, height_mm)
    gap_x, gap_y = scale.gap_px(config.gap_mm)
    tracker = OccupancyTracker.from_intensities(grid, gap_x, gap_y)
    evaluator = CoverageEvaluator(tracker.original)
    sizes = build_candidate_sizes(config)
    logger.debug(
        "Prepared scan: %dx%d px, %.3f x %.3f px/mm, %d candidate sizes, gap %d/%d px",
        mask_width, mask_height, scale.px_per_mm_x, scale.px_per_mm_y, len(sizes), gap_x, gap_y,
    )
    return PlacementScanner(tracker, evaluator, sizes, config, scale, listener, token)


async def pack_rectangles(
    mask: Any,
    mask_width: int,
    mask_height: int,
    width_mm: float,
    height_mm: float,
    config: Optional[PackingConfig] = None,
    *,
    listener: Optional[PackingListener] = None,
    token: Optional[CancellationToken] = None,
) -> List[PlacementSuggestion]:
    scanner = prepare_scan(mask, mask_width, mask_height, width_mm, height_mm, config, listener, token)
    suggestions = await scanner.run()
    logger.info("Suggested %d rectangles (%s)", len(suggestions), scanner.state.value)
    return suggestions


def pack_rectangles_sync(
    mask: Any,
    mask_width: int,
    mask_height: int,
    width_mm: float,
    height_mm: float,
    config: Optional[PackingConfig] = None,
    *,
    listener: Optional[PackingListener] = None,
    token: Optional[CancellationToken] = None,
) -> List[PlacementSuggestion]:
    """Blocking wrapper for callers without an event loop (CLI, worker threads)."""
    return asyncio.run(
        pack_rectangles(mask, mask_width, mask_height, width_mm, height_mm, config, listener=listener, token=token)
    )
