"""Tests for merging flush rectangles into outlines."""
from outline_merge import (
    PixelRect,
    cluster_outline,
    group_clusters,
    merge_outlines,
    outlines_to_mm,
    shares_edge,
    should_merge,
    suggestions_to_pixel_rects,
)
from rect_packer import PlacementSuggestion


class TestSharesEdge:

    def test_side_by_side(self):
        assert shares_edge(PixelRect(0, 0, 10, 10), PixelRect(10, 0, 10, 10))
        assert shares_edge(PixelRect(10, 0, 10, 10), PixelRect(0, 0, 10, 10))

    def test_stacked_with_partial_overlap(self):
        assert shares_edge(PixelRect(0, 0, 10, 10), PixelRect(5, 10, 10, 4))

    def test_corner_touch_is_not_an_edge(self):
        assert not shares_edge(PixelRect(0, 0, 10, 10), PixelRect(10, 10, 10, 10))

    def test_separated(self):
        assert not shares_edge(PixelRect(0, 0, 10, 10), PixelRect(12, 0, 10, 10))


class TestGrouping:

    def test_chain_found_regardless_of_order(self):
        a, c, b = PixelRect(0, 0, 10, 10), PixelRect(20, 0, 10, 10), PixelRect(10, 0, 10, 10)
        far = PixelRect(50, 50, 5, 5)
        clusters = group_clusters([a, c, far, b])
        assert len(clusters) == 2
        assert set(clusters[0]) == {a, b, c}
        assert clusters[1] == [far]

    def test_long_strip_is_one_cluster(self):
        strip = [PixelRect(i * 4, 0, 4, 4) for i in range(500)]
        clusters = group_clusters(strip)
        assert len(clusters) == 1
        assert len(clusters[0]) == 500


class TestOutline:

    def test_singleton_is_its_corners(self):
        assert cluster_outline([PixelRect(1, 2, 3, 4)]) == [(1.0, 2.0), (4.0, 2.0), (4.0, 6.0), (1.0, 6.0)]

    def test_strip_outline_walks_around(self):
        outline = cluster_outline([PixelRect(0, 0, 10, 10), PixelRect(10, 0, 10, 10)])
        assert outline == [(0.0, 0.0), (10.0, 0.0), (20.0, 0.0), (20.0, 10.0), (10.0, 10.0), (0.0, 10.0)]

    def test_block_keeps_shared_centre_vertex(self):
        # Known limitation: a 2x2 block is not reduced to its four corners
        block = [PixelRect(0, 0, 10, 10), PixelRect(10, 0, 10, 10), PixelRect(0, 10, 10, 10), PixelRect(10, 10, 10, 10)]
        outline = cluster_outline(block)
        assert (10.0, 10.0) in outline
        assert len(outline) == 9

    def test_merge_outlines_per_cluster(self):
        rects = [PixelRect(0, 0, 10, 10), PixelRect(10, 0, 10, 10), PixelRect(40, 40, 5, 5)]
        outlines = merge_outlines(rects)
        assert len(outlines) == 2
        assert len(outlines[1]) == 4


class TestConversions:

    def test_should_merge_only_flush_and_square(self):
        assert should_merge(0, 0)
        assert not should_merge(0.5, 0)
        assert not should_merge(0, 2)

    def test_suggestions_snap_to_pixels(self):
        rects = suggestions_to_pixel_rects([PlacementSuggestion(10.0, 5.0, 20.0, 10.0)], 2.0, 4.0)
        assert rects == [PixelRect(20, 20, 40, 40)]

    def test_outlines_back_to_mm(self):
        assert outlines_to_mm([[(20.0, 20.0)]], 2.0, 4.0) == [[(10.0, 5.0)]]
