"""
Tests for the drawtext filter graph builder.
"""

from animcap.services.escaping import unescape
from animcap.services.filter_graph import build_drawtext, build_filter_graph, format_seconds
from animcap.services.timeline import Segment, Timeline


class TestFormatSeconds:
    """Tests for compact second formatting."""

    def test_integers_lose_decimals(self):
        assert format_seconds(2.0) == "2"
        assert format_seconds(0.0) == "0"

    def test_fractions_kept(self):
        assert format_seconds(1.25) == "1.25"
        assert format_seconds(0.1 + 0.2) == "0.3"


class TestBuildDrawtext:
    """Tests for a single drawtext filter."""

    def test_enable_window(self, font_catalog):
        """Test the enable predicate carries the segment window."""
        segment = Segment("hello", 0.0, 2.0)
        drawtext = build_drawtext(segment, font_catalog.default_path)
        assert drawtext.startswith("drawtext=")
        assert "enable=between(t\\,0\\,2)" in drawtext

    def test_quote_and_colon_survive(self):
        """Test a caption with a quote and colon unwinds to the raw text."""
        segment = Segment("it's 5:00", 1.0, 3.0)
        drawtext = build_drawtext(segment, "/fonts/anton.ttf", path_separator="/")

        # Graph level, then option level
        options = unescape(drawtext[len("drawtext="):])
        assert "text=it\\'s 5\\:00" in options
        text_value = options.split("text=", 1)[1].split(":expansion=none", 1)[0]
        assert unescape(text_value) == "it's 5:00"

    def test_no_expansion(self):
        """Test drawtext expansion is disabled for literal text."""
        drawtext = build_drawtext(Segment("100%", 0.0, 1.0), "/fonts/a.ttf", path_separator="/")
        assert "expansion=none" in drawtext
        assert "text=100\\\\%" in drawtext

    def test_windows_font_path(self):
        """Test a Windows font path has its drive colon escaped at both levels."""
        drawtext = build_drawtext(Segment("x", 0.0, 1.0), "C:\\Fonts\\anton.ttf", path_separator="\\")
        assert "fontfile=C\\\\:/Fonts/anton.ttf" in drawtext

    def test_centered_boxed_style(self):
        """Test fixed style constants are present."""
        drawtext = build_drawtext(Segment("x", 0.0, 1.0), "/fonts/a.ttf", path_separator="/")
        for option in ("fontcolor=white", "fontsize=48", "box=1", "boxcolor=black@0.5",
                       "x=(w-text_w)/2", "y=(h-text_h)/2"):
            assert option in drawtext


class TestBuildFilterGraph:
    """Tests for the full filter chain."""

    def test_one_filter_per_segment_in_order(self, font_catalog):
        """Test filters follow input segment order."""
        timeline = Timeline([Segment("B", 1.0, 4.0), Segment("A", 0.0, 3.0)])
        graph = build_filter_graph(timeline, font_catalog)
        filters = graph.split(",drawtext=")
        assert len(filters) == 2
        assert "text=B" in filters[0]
        assert "text=A" in filters[1]

    def test_unknown_font_uses_default(self, font_catalog):
        """Test a missing family falls back to the default font."""
        timeline = Timeline([Segment("x", 0.0, 1.0, font_family="Papyrus")])
        graph = build_filter_graph(timeline, font_catalog)
        assert "roboto-bold.ttf" in graph

    def test_deterministic(self, font_catalog):
        """Test the same timeline always compiles to the same graph."""
        timeline = Timeline([Segment("a", 0.0, 1.0), Segment("b", 1.0, 2.0)])
        assert build_filter_graph(timeline, font_catalog) == build_filter_graph(timeline, font_catalog)
