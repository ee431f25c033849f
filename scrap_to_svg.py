#!/usr/bin/env python3
"""
Turn a photo of a scrap board into an SVG outline and optionally fill its
usable area with suggested rectangles.

Pipeline (configurable via CLI):
 1) Load the photo; find the board corners from red tape markers (or take
    them from --corners) and rectify the board to a top-down image of known
    physical size
 2) Downscale, convert to grayscale, binarize (Otsu unless --threshold is
    given); white = usable material
 3) Trace the mask into polygons
 4) Optionally pack rectangles into the white area (see rect_packer)
 5) Export an SVG sized in mm whose viewBox is the mask's pixel grid

Examples:
  # Board photographed with red tape on its corners, default 525x645 mm board
  python scrap_to_svg.py -i scrap.jpg -o scrap.svg --auto-corners

  # Known corners, 300x200 mm board, fill with 40x20..100x50 mm pieces, 2 mm kerf
  python scrap_to_svg.py -i scrap.jpg --corners 102 88 1830 120 1790 1260 95 1210 \
      --width-mm 300 --height-mm 200 --pack --min-size 40 20 --max-size 100 50 --gap-mm 2

Notes:
 - With --gap-mm 0 and --corner-radius-mm 0, touching rectangles are merged
   into single outlines.
"""

from __future__ import annotations

import argparse
import logging
import math
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import svgwrite

from outline_merge import merge_outlines, should_merge, suggestions_to_pixel_rects
from rect_packer import (
    CallbackListener,
    PackingConfig,
    PlacementSuggestion,
    ProgressSnapshot,
    pack_rectangles_sync,
)

logger = logging.getLogger(__name__)

BOARD_WIDTH_MM = 525.0
BOARD_HEIGHT_MM = 645.0
PIXELS_PER_MM = 4.0
MAX_SCAN_PIXELS = 10_000
MAX_TRACE_DIMENSION = 1200

Point = Tuple[float, float]


class ImageProcessingError(RuntimeError):
    pass


@dataclass
class ShapeStyle:
    corner_radius_mm: float = 2.0
    stroke_width_mm: float = 0.1
    stroke_color: str = "#ff4d4f"
    outline_color: str = "black"


@dataclass
class Settings:
    threshold: int = -1  # -1 means Otsu
    blur_ksize: int = 0
    width_mm: float = BOARD_WIDTH_MM
    height_mm: float = BOARD_HEIGHT_MM
    pixels_per_mm: float = PIXELS_PER_MM
    corners: Optional[List[Point]] = None
    auto_corners: bool = False
    max_dimension: int = MAX_TRACE_DIMENSION
    epsilon_frac: float = 0.002
    min_area: float = 350.0  # px^2 of the traced mask
    boundary_box: Optional[Tuple[int, int, int, int]] = None  # x, y, w, h in mask px
    pack: bool = False
    packing: PackingConfig = field(default_factory=PackingConfig)
    style: ShapeStyle = field(default_factory=ShapeStyle)
    save_debug: Optional[str] = None


@dataclass
class ScrapMask:
    """Binarized board: 255 = usable material, 0 = background/defect."""
    mask: np.ndarray
    width_mm: float
    height_mm: float

    @property
    def width_px(self) -> int:
        return int(self.mask.shape[1])

    @property
    def height_px(self) -> int:
        return int(self.mask.shape[0])

    @property
    def px_per_mm_x(self) -> float:
        return self.width_px / self.width_mm

    @property
    def px_per_mm_y(self) -> float:
        return self.height_px / self.height_mm


def parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.Namespace, Settings]:
    p = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument("-i", "--input", required=True, help="Photo of the scrap board")
    p.add_argument("-o", "--output", required=False, help="Output SVG path (default: <input_basename>.svg)")

    p.add_argument("--corners", type=float, nargs="+", metavar="XY", help="Board corners in photo pixels: x1 y1 x2 y2 ... (3 or more points)")
    p.add_argument("--auto-corners", action="store_true", help="Find board corners from red tape markers")
    p.add_argument("--width-mm", type=float, default=BOARD_WIDTH_MM, help="Physical board width")
    p.add_argument("--height-mm", type=float, default=BOARD_HEIGHT_MM, help="Physical board height")
    p.add_argument("--pixels-per-mm", type=float, default=PIXELS_PER_MM, help="Resolution of the rectified board image")

    p.add_argument("--threshold", type=int, default=-1, help="Binarization threshold; -1 means Otsu auto")
    p.add_argument("--blur-ksize", type=int, default=0, help="Gaussian blur kernel size (odd, 0 to disable)")
    p.add_argument("--max-dimension", type=int, default=MAX_TRACE_DIMENSION, help="Longest mask side before tracing")
    p.add_argument("--epsilon-frac", type=float, default=0.002, help="Fraction of contour perimeter for approxPolyDP")
    p.add_argument("--min-area", type=float, default=350.0, help="Minimum traced region area (mask px^2)")
    p.add_argument("--box", type=int, nargs=4, metavar=("X", "Y", "W", "H"), help="Only pack inside this mask-pixel box")

    p.add_argument("--pack", action="store_true", help="Suggest rectangles inside the usable area")
    p.add_argument("--max-size", type=float, nargs=2, metavar=("W", "H"), default=(100.0, 50.0))
    p.add_argument("--min-size", type=float, nargs=2, metavar=("W", "H"), default=(30.0, 20.0))
    p.add_argument("--step-mm", type=float, default=1.0)
    p.add_argument("--gap-mm", type=float, default=0.0)
    p.add_argument("--coverage", type=float, default=0.9, help="Minimum usable fraction inside each rectangle")
    p.add_argument("--orientation", choices=["landscape", "portrait", "both"], default="both")
    p.add_argument("--max-shapes", type=int, default=500)

    p.add_argument("--corner-radius-mm", type=float, default=2.0)
    p.add_argument("--stroke-width-mm", type=float, default=0.1)
    p.add_argument("--stroke-color", default="#ff4d4f")
    p.add_argument("--save-debug", type=str, default=None, help="Optional path to save the binary mask for debugging")

    args = p.parse_args(argv)

    s = Settings()
    if args.corners is not None:
        if len(args.corners) % 2 != 0:
            p.error("--corners needs an even number of values")
        vals = args.corners
        s.corners = [(vals[k], vals[k + 1]) for k in range(0, len(vals), 2)]
    s.auto_corners = args.auto_corners
    s.width_mm = args.width_mm
    s.height_mm = args.height_mm
    s.pixels_per_mm = args.pixels_per_mm
    s.threshold = args.threshold
    s.blur_ksize = args.blur_ksize
    s.max_dimension = args.max_dimension
    s.epsilon_frac = args.epsilon_frac
    s.min_area = args.min_area
    if args.box is not None:
        s.boundary_box = tuple(args.box)
    s.pack = args.pack
    s.packing = PackingConfig.clamped(
        max_width_mm=args.max_size[0],
        max_height_mm=args.max_size[1],
        min_width_mm=args.min_size[0],
        min_height_mm=args.min_size[1],
        step_mm=max(1.0, args.step_mm),
        gap_mm=args.gap_mm,
        coverage_threshold=args.coverage,
        orientation=args.orientation,
        max_shapes=args.max_shapes,
    )
    s.style = ShapeStyle(
        corner_radius_mm=args.corner_radius_mm,
        stroke_width_mm=args.stroke_width_mm,
        stroke_color=args.stroke_color,
    )
    s.save_debug = args.save_debug
    return args, s


# ---------------------------------------------------------------------------
# Corner detection and perspective correction
# ---------------------------------------------------------------------------

def detect_red_pixels(img: np.ndarray, max_scan_pixels: int = MAX_SCAN_PIXELS) -> List[Tuple[int, int]]:
    """Sample the photo on a coarse grid and return (x, y) of tape-red pixels."""
    h, w = img.shape[:2]
    step = max(1, int(round(math.sqrt((w * h) / float(max_scan_pixels)))))
    sub = img[::step, ::step].astype(np.int16)
    b, g, r = sub[..., 0], sub[..., 1], sub[..., 2]
    hit = (r > 150) & (r - np.maximum(g, b) > 40) & (g < 200) & (b < 200)
    ys, xs = np.nonzero(hit)
    return [(int(x) * step, int(y) * step) for y, x in zip(ys, xs)]


def clamp_point(p: Point, width: int, height: int) -> Point:
    return (min(max(p[0], 0), width - 1), min(max(p[1], 0), height - 1))


def infer_corners_from_red_pixels(points: Sequence[Point], width: int, height: int) -> List[Point]:
    by_y = sorted(points, key=lambda p: p[1])
    top = by_y[:max(2, int(math.floor(len(by_y) * 0.1 + 0.5)))]
    top_left = min(top, key=lambda p: p[0])
    top_right = max(top, key=lambda p: p[0])
    bottom_right = by_y[-1]
    bottom_left = (
        top_left[0] + bottom_right[0] - top_right[0],
        top_left[1] + bottom_right[1] - top_right[1],
    )
    return [top_left, top_right, bottom_right, clamp_point(bottom_left, width, height)]


def _four_extreme_points(points: Sequence[Point]) -> List[Point]:
    tl = min(points, key=lambda p: p[0] + p[1])
    tr = max(points, key=lambda p: p[0] - p[1])
    br = max(points, key=lambda p: p[0] + p[1])
    bl = max(points, key=lambda p: p[1] - p[0])
    return [tl, tr, br, bl]


def normalize_corners(corners: Sequence[Point], width: int, height: int) -> List[Point]:
    """Return exactly four clamped corners ordered TL, TR, BR, BL."""
    if len(corners) < 3:
        raise ImageProcessingError("At least three corner points are required")
    working = [clamp_point((float(x), float(y)), width, height) for x, y in corners]

    if len(working) == 3:
        by_y = sorted(working, key=lambda p: p[1])
        top_left, top_right = sorted(by_y[:2], key=lambda p: p[0])
        bottom_right = by_y[2]
        bottom_left = clamp_point(
            (top_left[0] + bottom_right[0] - top_right[0], top_left[1] + bottom_right[1] - top_right[1]),
            width,
            height,
        )
        working = [top_left, top_right, bottom_right, bottom_left]
    elif len(working) > 4:
        working = _four_extreme_points(working)

    by_y = sorted(working, key=lambda p: p[1])
    top_left, top_right = sorted(by_y[:2], key=lambda p: p[0])
    bottom_left, bottom_right = sorted(by_y[-2:], key=lambda p: p[0])
    return [top_left, top_right, bottom_right, bottom_left]


def correct_perspective(
    img: np.ndarray,
    corners: Sequence[Point],
    width_mm: float = BOARD_WIDTH_MM,
    height_mm: float = BOARD_HEIGHT_MM,
    pixels_per_mm: float = PIXELS_PER_MM,
) -> np.ndarray:
    h, w = img.shape[:2]
    ordered = normalize_corners(corners, w, h)
    target_w = max(1, int(round(width_mm * pixels_per_mm)))
    target_h = max(1, int(round(height_mm * pixels_per_mm)))
    src = np.array(ordered, dtype=np.float32)
    dst = np.array([[0, 0], [target_w - 1, 0], [target_w - 1, target_h - 1], [0, target_h - 1]], dtype=np.float32)
    matrix = cv2.getPerspectiveTransform(src, dst)
    return cv2.warpPerspective(img, matrix, (target_w, target_h), flags=cv2.INTER_LINEAR)


def auto_correct_perspective(
    img: np.ndarray,
    width_mm: float = BOARD_WIDTH_MM,
    height_mm: float = BOARD_HEIGHT_MM,
    pixels_per_mm: float = PIXELS_PER_MM,
) -> Tuple[np.ndarray, List[Point]]:
    h, w = img.shape[:2]
    red = detect_red_pixels(img)
    if len(red) < 3:
        raise ImageProcessingError("Not enough red tape markers found; make sure the tape is clearly visible")
    corners = normalize_corners(infer_corners_from_red_pixels(red, w, h), w, h)
    logger.info("Detected board corners from %d red pixels: %s", len(red), corners)
    return correct_perspective(img, corners, width_mm, height_mm, pixels_per_mm), corners


# ---------------------------------------------------------------------------
# Mask and tracing
# ---------------------------------------------------------------------------

def gaussian_blur_if_needed(gray: np.ndarray, ksize: int) -> np.ndarray:
    if ksize and ksize > 1 and ksize % 2 == 1:
        return cv2.GaussianBlur(gray, (ksize, ksize), 0)
    return gray


def binarize(img: np.ndarray, threshold: int = -1, max_dimension: int = MAX_TRACE_DIMENSION, blur_ksize: int = 0) -> np.ndarray:
    h, w = img.shape[:2]
    scale = min(1.0, max_dimension / float(max(w, h)))
    if scale < 1.0:
        img = cv2.resize(img, (max(1, int(round(w * scale))), max(1, int(round(h * scale)))), interpolation=cv2.INTER_AREA)
    gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY) if img.ndim == 3 else img
    gray = gaussian_blur_if_needed(gray, blur_ksize)
    if threshold < 0:
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    else:
        _, binary = cv2.threshold(gray, threshold, 255, cv2.THRESH_BINARY)
    return binary


def restrict_mask_to_box(mask: np.ndarray, box: Tuple[int, int, int, int]) -> np.ndarray:
    """Keep only the mask inside (x, y, w, h); everything else becomes unusable."""
    x, y, w, h = (int(round(v)) for v in box)
    out = np.zeros_like(mask)
    x0, y0 = max(0, x), max(0, y)
    x1, y1 = min(mask.shape[1], x + w), min(mask.shape[0], y + h)
    if x1 > x0 and y1 > y0:
        out[y0:y1, x0:x1] = mask[y0:y1, x0:x1]
    return out


def build_scrap_mask(img: np.ndarray, s: Settings) -> ScrapMask:
    if s.corners:
        board = correct_perspective(img, s.corners, s.width_mm, s.height_mm, s.pixels_per_mm)
    elif s.auto_corners:
        board, _ = auto_correct_perspective(img, s.width_mm, s.height_mm, s.pixels_per_mm)
    else:
        board = img
    return ScrapMask(binarize(board, s.threshold, s.max_dimension, s.blur_ksize), s.width_mm, s.height_mm)


def find_and_approx_contours(binary: np.ndarray, epsilon_frac: float = 0.002, min_area: float = 350.0) -> List[np.ndarray]:
    contours, _ = cv2.findContours(binary, cv2.RETR_CCOMP, cv2.CHAIN_APPROX_SIMPLE)
    approx = []
    for cnt in contours:
        peri = cv2.arcLength(cnt, True)
        eps = max(1.0, epsilon_frac * peri)
        ap = cv2.approxPolyDP(cnt, eps, True)
        if len(ap) >= 3 and cv2.contourArea(ap) >= min_area:
            approx.append(ap)
    return approx


# ---------------------------------------------------------------------------
# SVG
# ---------------------------------------------------------------------------

SHAPE_KINDS = ("roundedRect", "circle")
BOUNDARY_COLOR = "#1890ff"


def _unit(scrap: ScrapMask) -> float:
    return min(scrap.px_per_mm_x, scrap.px_per_mm_y)


def _stroke_width(scrap: ScrapMask, style: ShapeStyle) -> float:
    return max(0.1, style.stroke_width_mm * _unit(scrap))


def _remove_elements(dwg: svgwrite.Drawing, attr: str, value: Optional[str] = None, keep_boundary: bool = False) -> int:
    """Drop top-level elements carrying ``attr`` (optionally equal to ``value``)."""
    kept, removed = [], 0
    for el in dwg.elements:
        attribs = getattr(el, "attribs", {})
        hit = attr in attribs and (value is None or str(attribs[attr]) == value)
        if hit and keep_boundary and str(attribs.get("data-boundary-box")) == "true":
            hit = False
        if hit:
            removed += 1
        else:
            kept.append(el)
    dwg.elements[:] = kept
    return removed


def new_drawing(
    scrap: ScrapMask,
    contours: Sequence[np.ndarray],
    style: Optional[ShapeStyle] = None,
    out_path: str = "",
) -> svgwrite.Drawing:
    """Scrap outline only, in mm units over a pixel viewBox."""
    style = style or ShapeStyle()
    dwg = svgwrite.Drawing(out_path, size=(f"{scrap.width_mm}mm", f"{scrap.height_mm}mm"), debug=False)
    dwg.viewbox(0, 0, scrap.width_px, scrap.height_px)

    outline = dwg.g(id="scrap-outline", fill="none", stroke=style.outline_color, stroke_width=_stroke_width(scrap, style))
    for cnt in contours:
        pts = [(float(x), float(y)) for x, y in cnt.reshape(-1, 2)]
        outline.add(dwg.polygon(points=pts))
    dwg.add(outline)
    return dwg


def add_suggestions(
    dwg: svgwrite.Drawing,
    scrap: ScrapMask,
    suggestions: Sequence[PlacementSuggestion],
    style: Optional[ShapeStyle] = None,
    gap_mm: float = 0.0,
) -> None:
    """Replace any earlier auto-fill with ``suggestions``.

    Flush, square-cornered fills are drawn as merged outlines; everything
    else as one (rounded) rect per suggestion.
    """
    style = style or ShapeStyle()
    sx, sy = scrap.px_per_mm_x, scrap.px_per_mm_y
    stroke_width = _stroke_width(scrap, style)
    _remove_elements(dwg, "data-auto-fill", "true")

    if should_merge(gap_mm, style.corner_radius_mm):
        rects = suggestions_to_pixel_rects(suggestions, sx, sy)
        for pts in merge_outlines(rects):
            el = dwg.polygon(points=pts, fill="none", stroke=style.stroke_color, stroke_width=stroke_width)
            el["vector-effect"] = "non-scaling-stroke"
            el["data-auto-fill"] = "true"
            el["data-extra-shape"] = "auto"
            dwg.add(el)
        return

    radius_px = max(0.0, style.corner_radius_mm) * _unit(scrap)
    for sug in suggestions:
        x, y = sug.x_mm * sx, sug.y_mm * sy
        w, h = sug.width_mm * sx, sug.height_mm * sy
        el = dwg.rect(insert=(x, y), size=(w, h), fill="none", stroke=style.stroke_color, stroke_width=stroke_width)
        r = min(radius_px, min(w, h) / 2.0)
        if r > 0:
            el["rx"] = r
            el["ry"] = r
        el["vector-effect"] = "non-scaling-stroke"
        el["data-auto-fill"] = "true"
        el["data-extra-shape"] = "auto"
        dwg.add(el)


def set_boundary_box(dwg: svgwrite.Drawing, scrap: ScrapMask, box: Tuple[int, int, int, int]) -> None:
    """Draw the packing boundary (x, y, w, h in mask px), replacing an earlier one."""
    x, y, w, h = box
    _remove_elements(dwg, "data-boundary-box", "true")
    el = dwg.rect(insert=(x, y), size=(w, h), fill="none", stroke=BOUNDARY_COLOR, stroke_width=1)
    el["stroke-dasharray"] = "6,4"
    el["vector-effect"] = "non-scaling-stroke"
    el["data-boundary-box"] = "true"
    el["data-boundary-width-mm"] = round(w / scrap.px_per_mm_x, 3)
    el["data-boundary-height-mm"] = round(h / scrap.px_per_mm_y, 3)
    el["data-extra-shape"] = "boundary"
    dwg.add(el)


def add_manual_shape(
    dwg: svgwrite.Drawing,
    scrap: ScrapMask,
    box: Tuple[int, int, int, int],
    kind: str = "roundedRect",
    style: Optional[ShapeStyle] = None,
    padding_mm: float = 12.0,
):
    """Add a rounded rect or circle filling ``box`` minus ``padding_mm`` on every side."""
    if kind not in SHAPE_KINDS:
        raise ValueError(f"Unknown shape {kind!r}; expected one of {', '.join(SHAPE_KINDS)}")
    style = style or ShapeStyle()
    pad = max(0.0, padding_mm)
    pad_x, pad_y = pad * scrap.px_per_mm_x, pad * scrap.px_per_mm_y
    bx, by, bw, bh = box
    x, y = bx + pad_x, by + pad_y
    w, h = max(bw - 2 * pad_x, 0.0), max(bh - 2 * pad_y, 0.0)

    if kind == "roundedRect":
        el = dwg.rect(insert=(x, y), size=(w, h))
        if w > 0 and h > 0:
            r = min(max(0.0, style.corner_radius_mm) * _unit(scrap), min(w, h) / 2.0)
            if r > 0:
                el["rx"] = r
                el["ry"] = r
    else:
        el = dwg.circle(center=(x + w / 2.0, y + h / 2.0), r=max(0.0, min(w, h) / 2.0))

    el["fill"] = "none"
    el["stroke"] = style.stroke_color
    el["stroke-width"] = _stroke_width(scrap, style)
    el["vector-effect"] = "non-scaling-stroke"
    el["data-extra-shape"] = "manual"
    dwg.add(el)
    return el


def clear_extra_shapes(dwg: svgwrite.Drawing) -> int:
    """Remove auto-fill and manual shapes, keeping the boundary box. Returns how many went."""
    return _remove_elements(dwg, "data-extra-shape", keep_boundary=True)


def build_drawing(
    scrap: ScrapMask,
    contours: Sequence[np.ndarray],
    suggestions: Sequence[PlacementSuggestion] = (),
    style: Optional[ShapeStyle] = None,
    gap_mm: float = 0.0,
    out_path: str = "",
) -> svgwrite.Drawing:
    """Scrap outline plus suggestions."""
    dwg = new_drawing(scrap, contours, style, out_path)
    if suggestions:
        add_suggestions(dwg, scrap, suggestions, style, gap_mm)
    return dwg


def to_svg(
    scrap: ScrapMask,
    contours: Sequence[np.ndarray],
    out_path: str,
    suggestions: Sequence[PlacementSuggestion] = (),
    style: Optional[ShapeStyle] = None,
    gap_mm: float = 0.0,
) -> str:
    if not contours and not suggestions:
        raise ImageProcessingError("Nothing to export: no contours and no suggestions")
    dwg = build_drawing(scrap, contours, suggestions, style, gap_mm, out_path)
    dwg.save()
    return out_path


def _print_progress(snapshot: ProgressSnapshot) -> None:
    print(
        f"\rScanning {snapshot.processed_rows}/{snapshot.total_rows} rows, "
        f"{snapshot.suggestion_count} rectangles",
        end="",
        flush=True,
    )


def main(argv: Optional[Sequence[str]] = None):
    args, s = parse_args(argv)
    out_path = args.output or os.path.splitext(args.input)[0] + ".svg"

    img = cv2.imread(args.input, cv2.IMREAD_COLOR)
    if img is None:
        raise SystemExit(f"Failed to read image: {args.input}")

    try:
        scrap = build_scrap_mask(img, s)
    except ImageProcessingError as exc:
        raise SystemExit(str(exc))
    if s.save_debug:
        cv2.imwrite(s.save_debug, scrap.mask)

    contours = find_and_approx_contours(scrap.mask, s.epsilon_frac, s.min_area)

    suggestions: List[PlacementSuggestion] = []
    if s.pack:
        pack_mask = restrict_mask_to_box(scrap.mask, s.boundary_box) if s.boundary_box else scrap.mask
        suggestions = pack_rectangles_sync(
            pack_mask,
            scrap.width_px,
            scrap.height_px,
            scrap.width_mm,
            scrap.height_mm,
            s.packing,
            listener=CallbackListener(on_progress=_print_progress),
        )
        print()
        if not suggestions:
            print("No usable white area found for the requested sizes.")

    try:
        to_svg(scrap, contours, out_path, suggestions, s.style, s.packing.gap_mm)
    except ImageProcessingError as exc:
        raise SystemExit(f"{exc}. Try adjusting the threshold or --min-area.")
    print(f"Wrote SVG to: {out_path} ({len(contours)} outlines, {len(suggestions)} rectangles)")


if __name__ == "__main__":
    main()
