"""Tests for shaping fetched pages."""
from sidecar.tools.page_fetch import key_points, relevant_sections, shape_page


def test_relevant_sections_keeps_content_without_matches():
    content = "alpha\nbeta\ngamma"
    assert relevant_sections(content, "kubernetes ingress") == content
    assert relevant_sections(content, "an of to") == content


def test_relevant_sections_orders_best_match_first():
    lines = ["intro", "cors is mentioned here"] + ["filler"] * 8 + ["# CORS preflight requests", "details"]
    text = relevant_sections("\n".join(lines), "cors preflight")

    sections = text.split("\n---")
    assert sections[0].startswith("filler\nfiller\n# CORS preflight requests\ndetails")
    assert "cors is mentioned here" in sections[1]


def test_key_points_reads_bullets_and_headings():
    content = "# Install the plugin\n- short\n* Configure the proxy target\nplain prose line\n## Usage"
    assert key_points(content) == ["Install the plugin", "Configure the proxy target"]
    many = "\n".join(f"- bullet number {i} is long enough" for i in range(10))
    assert len(key_points(many)) == 5


def test_shape_page_builds_excerpt_for_long_content():
    page = shape_page("https://a.dev", "A", "x" * 800, query=None, max_length=700)
    assert page.truncated is True
    assert len(page.content) == 700
    assert page.excerpt == "x" * 500 + "..."
