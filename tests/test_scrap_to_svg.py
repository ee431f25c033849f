"""Tests for the photo -> mask -> SVG pipeline."""
import os
import tempfile

import cv2
import numpy as np
import pytest

import scrap_to_svg as core
from rect_packer import PlacementSuggestion


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as d:
        yield d


def _board_photo():
    """White 200x160 board with red tape squares near three corners."""
    img = np.full((160, 200, 3), 255, dtype=np.uint8)
    red = (0, 0, 255)
    img[10:20, 10:20] = red
    img[10:20, 180:190] = red
    img[140:150, 180:190] = red
    return img


class TestCorners:

    def test_detect_red_pixels_finds_tape_only(self):
        points = core.detect_red_pixels(_board_photo())
        assert points
        for x, y in points:
            assert (10 <= x < 20 or 180 <= x < 190) and (10 <= y < 20 or 140 <= y < 150)

    def test_no_tape_means_no_pixels(self):
        assert core.detect_red_pixels(np.full((50, 50, 3), 255, dtype=np.uint8)) == []

    def test_infer_corners_completes_parallelogram(self):
        pts = [(10, 10), (90, 12), (92, 80)]
        corners = core.infer_corners_from_red_pixels(pts, 100, 100)
        assert corners == [(10, 10), (90, 12), (92, 80), (12, 78)]

    def test_normalize_orders_four_points(self):
        pts = [(90, 80), (10, 10), (10, 85), (95, 5)]
        assert core.normalize_corners(pts, 100, 100) == [(10.0, 10.0), (95.0, 5.0), (90.0, 80.0), (10.0, 85.0)]

    def test_normalize_three_points(self):
        corners = core.normalize_corners([(10, 10), (90, 10), (90, 90)], 100, 100)
        assert corners == [(10.0, 10.0), (90.0, 10.0), (90.0, 90.0), (10.0, 90.0)]

    def test_normalize_many_points_picks_extremes(self):
        pts = [(10, 10), (50, 12), (90, 10), (90, 90), (10, 90)]
        corners = core.normalize_corners(pts, 100, 100)
        assert corners == [(10.0, 10.0), (90.0, 10.0), (90.0, 90.0), (10.0, 90.0)]

    def test_normalize_clamps_to_image(self):
        corners = core.normalize_corners([(-5, -5), (120, 0), (120, 120), (0, 130)], 100, 100)
        assert all(0 <= x <= 99 and 0 <= y <= 99 for x, y in corners)

    def test_too_few_corners(self):
        with pytest.raises(core.ImageProcessingError):
            core.normalize_corners([(0, 0), (1, 1)], 10, 10)


class TestPerspective:

    def test_output_size_follows_board(self):
        img = _board_photo()
        out = core.correct_perspective(img, [(15, 15), (185, 15), (185, 145), (15, 145)], 50.0, 30.0, 2.0)
        assert out.shape == (60, 100, 3)

    def test_auto_correction_needs_tape(self):
        with pytest.raises(core.ImageProcessingError):
            core.auto_correct_perspective(np.full((60, 60, 3), 255, dtype=np.uint8))

    def test_auto_correction_uses_tape(self):
        out, corners = core.auto_correct_perspective(_board_photo(), 40.0, 30.0, 2.0)
        assert out.shape[:2] == (60, 80)
        assert len(corners) == 4


class TestMask:

    def test_binarize_marks_bright_as_usable(self):
        img = np.zeros((40, 40, 3), dtype=np.uint8)
        img[:, 20:] = 230
        mask = core.binarize(img)
        assert (mask[:, 20:] == 255).all()
        assert (mask[:, :20] == 0).all()

    def test_binarize_fixed_threshold_and_downscale(self):
        img = np.full((400, 200), 120, dtype=np.uint8)
        mask = core.binarize(img, threshold=100, max_dimension=100)
        assert mask.shape == (100, 50)
        assert (mask == 255).all()

    def test_restrict_mask_to_box(self):
        mask = np.full((10, 10), 255, dtype=np.uint8)
        out = core.restrict_mask_to_box(mask, (2, 3, 4, 20))
        assert out[3:, 2:6].all()
        assert out.sum() == 255 * 4 * 7

    def test_build_scrap_mask_without_corners(self):
        img = np.full((80, 100, 3), 255, dtype=np.uint8)
        scrap = core.build_scrap_mask(img, core.Settings(width_mm=50.0, height_mm=40.0))
        assert (scrap.width_px, scrap.height_px) == (100, 80)
        assert scrap.px_per_mm_x == 2.0
        assert scrap.px_per_mm_y == 2.0

    def test_contours_of_square(self):
        binary = np.zeros((100, 100), dtype=np.uint8)
        binary[20:80, 20:80] = 255
        contours = core.find_and_approx_contours(binary)
        assert len(contours) == 1
        assert len(contours[0]) == 4


class TestSvg:

    @staticmethod
    def _scrap():
        mask = np.zeros((100, 100), dtype=np.uint8)
        mask[10:90, 10:90] = 255
        return core.ScrapMask(mask, 50.0, 50.0)

    def test_rounded_rectangles(self, tmp_dir):
        scrap = self._scrap()
        contours = core.find_and_approx_contours(scrap.mask)
        sugg = [PlacementSuggestion(5.0, 5.0, 20.0, 10.0), PlacementSuggestion(25.0, 5.0, 20.0, 10.0)]
        out = core.to_svg(scrap, contours, os.path.join(tmp_dir, "a.svg"), sugg, core.ShapeStyle(), gap_mm=0.0)
        with open(out) as f:
            svg = f.read()
        assert svg.count("<rect") == 2
        assert 'rx="4.0"' in svg
        assert 'width="50.0mm"' in svg
        assert 'data-auto-fill="true"' in svg

    def test_flush_square_corners_are_merged(self):
        scrap = self._scrap()
        sugg = [PlacementSuggestion(5.0, 5.0, 20.0, 10.0), PlacementSuggestion(25.0, 5.0, 20.0, 10.0)]
        style = core.ShapeStyle(corner_radius_mm=0.0)
        svg = core.build_drawing(scrap, [], sugg, style, gap_mm=0.0).tostring()
        assert "<rect" not in svg
        assert svg.count("<polygon") == 1

    def test_nothing_to_export(self, tmp_dir):
        with pytest.raises(core.ImageProcessingError):
            core.to_svg(self._scrap(), [], os.path.join(tmp_dir, "b.svg"))

    def test_refill_replaces_earlier_auto_fill(self):
        scrap = self._scrap()
        dwg = core.build_drawing(scrap, [], [PlacementSuggestion(5.0, 5.0, 20.0, 10.0)])
        core.add_suggestions(dwg, scrap, [PlacementSuggestion(5.0, 20.0, 10.0, 10.0)] * 2)
        assert dwg.tostring().count('data-auto-fill="true"') == 2


class TestShapeTools:

    @staticmethod
    def _scrap():
        return core.ScrapMask(np.full((100, 100), 255, dtype=np.uint8), 50.0, 50.0)

    def test_rounded_rect_is_inset_by_padding(self):
        scrap = self._scrap()
        dwg = core.new_drawing(scrap, [])
        el = core.add_manual_shape(dwg, scrap, (10, 10, 80, 60), "roundedRect", core.ShapeStyle(), padding_mm=12.0)
        # 2 px/mm: 24 px padding on each side
        assert (el["x"], el["y"], el["width"], el["height"]) == (34.0, 34.0, 32.0, 12.0)
        assert el["rx"] == 4.0
        assert el["data-extra-shape"] == "manual"

    def test_corner_radius_capped_at_half_the_short_side(self):
        scrap = self._scrap()
        dwg = core.new_drawing(scrap, [])
        el = core.add_manual_shape(dwg, scrap, (0, 0, 80, 30), style=core.ShapeStyle(corner_radius_mm=20.0),
                                   padding_mm=5.0)
        assert el["height"] == 10.0
        assert el["rx"] == 5.0

    def test_circle_centred_in_box(self):
        scrap = self._scrap()
        dwg = core.new_drawing(scrap, [])
        el = core.add_manual_shape(dwg, scrap, (10, 10, 80, 60), "circle", padding_mm=12.0)
        assert (el["cx"], el["cy"], el["r"]) == (50.0, 40.0, 6.0)

    def test_padding_larger_than_box_collapses(self):
        scrap = self._scrap()
        dwg = core.new_drawing(scrap, [])
        el = core.add_manual_shape(dwg, scrap, (0, 0, 20, 20), padding_mm=12.0)
        assert el["width"] == 0.0
        assert "rx" not in el.attribs

    def test_unknown_shape_rejected(self):
        scrap = self._scrap()
        with pytest.raises(ValueError):
            core.add_manual_shape(core.new_drawing(scrap, []), scrap, (0, 0, 50, 50), "star")

    def test_clear_keeps_outline_and_boundary(self):
        scrap = self._scrap()
        contours = core.find_and_approx_contours(TestSvg._scrap().mask)
        dwg = core.build_drawing(scrap, contours, [PlacementSuggestion(0.0, 0.0, 10.0, 10.0)] * 2)
        core.set_boundary_box(dwg, scrap, (0, 0, 100, 100))
        core.add_manual_shape(dwg, scrap, (0, 0, 100, 100))
        assert core.clear_extra_shapes(dwg) == 3
        svg = dwg.tostring()
        assert 'data-boundary-box="true"' in svg
        assert 'data-extra-shape="manual"' not in svg
        assert 'data-auto-fill' not in svg
        assert "<polygon" in svg

    def test_boundary_box_is_replaced(self):
        scrap = self._scrap()
        dwg = core.new_drawing(scrap, [])
        core.set_boundary_box(dwg, scrap, (0, 0, 40, 40))
        core.set_boundary_box(dwg, scrap, (10, 10, 20, 30))
        svg = dwg.tostring()
        assert svg.count('data-boundary-box="true"') == 1
        assert 'data-boundary-height-mm="15.0"' in svg



class TestCli:

    def test_pack_end_to_end(self, tmp_dir, capsys):
        img = np.full((100, 100, 3), 255, dtype=np.uint8)
        img[:, 40:60] = 0
        src = os.path.join(tmp_dir, "board.png")
        out = os.path.join(tmp_dir, "board.svg")
        cv2.imwrite(src, img)
        core.main([
            "-i", src, "-o", out, "--pack", "--width-mm", "50", "--height-mm", "50",
            "--max-size", "20", "20", "--min-size", "10", "10", "--step-mm", "10",
            "--min-area", "10",
        ])
        assert os.path.isfile(out)
        printed = capsys.readouterr().out
        assert "6 rectangles" in printed

    def test_unreadable_input(self, tmp_dir):
        with pytest.raises(SystemExit):
            core.main(["-i", os.path.join(tmp_dir, "missing.png")])

    def test_odd_corner_values_rejected(self, tmp_dir):
        with pytest.raises(SystemExit):
            core.parse_args(["-i", "x.png", "--corners", "1", "2", "3"])
