"""Tests for same-origin link discovery."""

import pytest

from pipelines.links import discover_links, has_admin_segment, has_asset_extension, should_follow_link
from html_samples import links_html

PAGE = "https://example.com/docs/start"
ORIGIN = "https://example.com"


def anchors(*hrefs):
    return "<html><body>" + "".join(f'<a href="{h}">x</a>' for h in hrefs) + "</body></html>"


class TestShouldFollowLink:

    @pytest.mark.parametrize("href", [
        "mailto:team@example.com",
        "tel:+15550100",
        "javascript:void(0)",
        "#section-2",
        "data:text/plain,hello",
        "",
    ])
    def test_non_navigational_hrefs_rejected(self, href):
        assert should_follow_link(href, PAGE, ORIGIN, 200) is None

    def test_relative_href_resolved_and_canonicalized(self):
        assert should_follow_link("../guide/?utm_source=x#top", PAGE, ORIGIN, 200) == \
            "https://example.com/guide"

    def test_other_origin_rejected(self):
        assert should_follow_link("https://other.com/page", PAGE, ORIGIN, 200) is None
        assert should_follow_link("http://example.com/page", PAGE, ORIGIN, 200) is None
        assert should_follow_link("https://docs.example.com/page", PAGE, ORIGIN, 200) is None

    @pytest.mark.parametrize("href", ["/files/report.PDF", "/img/logo.png", "/app.js", "/feed.rss"])
    def test_asset_links_rejected(self, href):
        assert should_follow_link(href, PAGE, ORIGIN, 200) is None

    @pytest.mark.parametrize("href", ["/login", "/wp-admin/options.php", "/api/v1/items", "/static/x"])
    def test_admin_and_utility_paths_rejected(self, href):
        assert should_follow_link(href, PAGE, ORIGIN, 200) is None

    def test_admin_words_inside_segments_allowed(self):
        assert should_follow_link("/blog/apis-explained", PAGE, ORIGIN, 200) == \
            "https://example.com/blog/apis-explained"

    def test_long_query_rejected(self):
        long_query = "/search?q=" + "a" * 200
        assert should_follow_link(long_query, PAGE, ORIGIN, 200) is None
        assert should_follow_link("/search?q=short", PAGE, ORIGIN, 200) == \
            "https://example.com/search?q=short"


class TestHelpers:

    def test_asset_extension(self):
        assert has_asset_extension("/a/b.zip")
        assert not has_asset_extension("/a/b")
        assert not has_asset_extension("/v1.2/guide/")

    def test_admin_segment(self):
        assert has_admin_segment("/en/checkout/")
        assert not has_admin_segment("/administration-guide")


class TestDiscoverLinks:

    def test_dedupes_in_document_order_and_skips_self(self):
        html = anchors("/b", "/a", "/b/", "/a?utm_campaign=z", "/docs/start", "#x", "/c")
        assert discover_links(html, PAGE, max_query_length=200) == [
            "https://example.com/b",
            "https://example.com/a",
            "https://example.com/c",
        ]

    def test_origin_defaults_to_page_origin(self):
        html = anchors("https://example.com/x", "https://elsewhere.org/y")
        assert discover_links(html, PAGE) == ["https://example.com/x"]

    def test_anchors_without_href_ignored(self):
        html = '<a name="top">Top</a><a href="/kept">Kept</a>'
        assert discover_links(html, PAGE) == ["https://example.com/kept"]

    def test_large_page_returns_every_unique_link(self):
        html = links_html([f"/articles/{i}" for i in range(200)])
        links = discover_links(html, PAGE)
        # Home link from the header plus every article; the per-page cap is applied by the crawl pipeline
        assert len(links) == 201
        assert links[0] == "https://example.com/"
        assert links[1] == "https://example.com/articles/0"


class TestRelativeResolution:

    def test_directory_page_resolves_relative_links_inside_it(self):
        html = anchors("intro", "guide/setup", "../about")
        assert discover_links(html, "https://example.com/docs/") == [
            "https://example.com/docs/intro",
            "https://example.com/docs/guide/setup",
            "https://example.com/about",
        ]

    def test_file_like_page_resolves_against_its_parent(self):
        html = anchors("intro")
        assert discover_links(html, "https://example.com/docs") == ["https://example.com/intro"]

    def test_base_href_takes_precedence(self):
        html = '<html><head><base href="/manual/v2/"></head><body><a href="install">x</a></body></html>'
        assert discover_links(html, "https://example.com/docs") == ["https://example.com/manual/v2/install"]

    def test_directory_page_does_not_link_to_itself(self):
        html = anchors("./", "/docs", "intro")
        assert discover_links(html, "https://example.com/docs/") == ["https://example.com/docs/intro"]
