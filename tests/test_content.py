"""Tests for the UBB converter, the HTML sanitizer and the content pipeline."""

from bs4 import BeautifulSoup

from nga_crawler.content import ContentProcessor, trim_edge_breaks
from nga_crawler.sanitizer import HtmlSanitizer
from nga_crawler.ubb import UbbConverter
from nga_crawler.url_policy import SafeUrlPolicy

SAFE_LINK = '<a href="https://x.test" rel="nofollow noopener noreferrer" target="_blank">x</a>'


class TestSafeUrlPolicy:
    def setup_method(self):
        self.policy = SafeUrlPolicy()

    def test_http_and_https_allowed(self):
        assert self.policy.normalize("https://x.test/a") == "https://x.test/a"
        assert self.policy.normalize("http://x.test") == "http://x.test"
        assert self.policy.is_allowed("HTTPS://X.TEST")

    def test_entities_decoded_and_trimmed(self):
        assert self.policy.normalize("  https://x.test/a?b=1&amp;c=2 ") == "https://x.test/a?b=1&c=2"

    def test_rejected(self):
        for candidate in (
            None,
            "",
            "javascript:alert(1)",
            "data:text/html,hi",
            "ftp://x.test/file",
            "https://",
            "/relative/path",
            "https://x.test/a b",
            "https://x.test/\x01",
            "java&#x0A;script:alert(1)",
        ):
            assert self.policy.normalize(candidate) is None, candidate


class TestUbbConverter:
    def setup_method(self):
        self.converter = UbbConverter()

    def test_inline_tags(self):
        assert self.converter.convert("[b]Hello[/b]") == "<strong>Hello</strong>"
        assert self.converter.convert("[i]a[/i][u]b[/u][s]c[/s][del]d[/del]") == (
            "<em>a</em><u>b</u><s>c</s><del>d</del>"
        )

    def test_unclosed_inline_tag_closed_at_end(self):
        assert self.converter.convert("[b]open") == "<strong>open</strong>"

    def test_mismatched_closer_kept_as_text(self):
        assert self.converter.convert("[b]x[/i]y[/b]") == "<strong>x[/i]y</strong>"

    def test_code_block_is_not_interpreted(self):
        assert self.converter.convert("[code][b]x[/b] <tag>[/code]") == (
            "<pre><code>[b]x[/b] &lt;tag&gt;</code></pre>"
        )

    def test_url_with_argument(self):
        assert self.converter.convert("[url=https://x.test]x[/url]") == SAFE_LINK

    def test_url_without_argument(self):
        assert self.converter.convert("[url]https://x.test[/url]") == (
            '<a href="https://x.test" rel="nofollow noopener noreferrer" target="_blank">https://x.test</a>'
        )

    def test_rejected_url_kept_as_literal_text(self):
        assert self.converter.convert("[url=javascript:alert(1)]x[/url]") == "[url=javascript:alert(1)]x[/url]"

    def test_image(self):
        assert self.converter.convert("[img]https://x.test/a.png[/img]") == (
            '<img src="https://x.test/a.png" alt="" loading="lazy" referrerpolicy="no-referrer">'
        )

    def test_rejected_image_kept_as_literal_text(self):
        assert self.converter.convert("[img]javascript:x[/img]") == "[img]javascript:x[/img]"

    def test_lists(self):
        assert self.converter.convert("[list][*]a[*]b[/list]") == "<ul><li>a</li><li>b</li></ul>"
        assert self.converter.convert("[list=1][*]a[/list]") == "<ol><li>a</li></ol>"

    def test_nested_quotes(self):
        assert self.converter.convert("[quote][quote]inner[/quote]outer[/quote]") == (
            "<blockquote><blockquote>inner</blockquote>outer</blockquote>"
        )

    def test_unclosed_block_kept_as_text(self):
        assert self.converter.convert("[quote]never closed") == "[quote]never closed"

    def test_unknown_tags_and_brackets_are_text(self):
        assert self.converter.convert("[size=3]x[/size] a [ b") == "[size=3]x[/size] a [ b"

    def test_newlines_become_breaks(self):
        assert self.converter.convert("a\r\nb\nc") == "a<br>b<br>c"

    def test_html_is_escaped(self):
        assert self.converter.convert('<script>alert("x")</script>') == (
            "&lt;script&gt;alert(&quot;x&quot;)&lt;/script&gt;"
        )


class TestHtmlSanitizer:
    def setup_method(self):
        self.sanitizer = HtmlSanitizer()

    def test_empty(self):
        assert self.sanitizer.sanitize("") == ""

    def test_disallowed_tags_unwrapped_and_scripts_dropped(self):
        dirty = '<p onclick="x">Hi <script>alert(1)</script><b>there</b></p>'
        assert self.sanitizer.sanitize(dirty) == "Hi there"

    def test_iframe_and_style_dropped_with_content(self):
        assert self.sanitizer.sanitize("<style>p{}</style><iframe>x</iframe>ok") == "ok"

    def test_comments_removed(self):
        assert self.sanitizer.sanitize("<!-- hidden -->ok") == "ok"

    def test_allowed_tags_lose_extra_attributes(self):
        assert self.sanitizer.sanitize('<strong class="c" style="x">a</strong>') == "<strong>a</strong>"

    def test_safe_link_gets_forced_attributes(self):
        assert self.sanitizer.sanitize('<a href="https://x.test" class="c" target="_self">x</a>') == SAFE_LINK

    def test_unsafe_link_loses_href(self):
        assert self.sanitizer.sanitize('<a href="javascript:alert(1)" onclick="x">x</a>') == "<a>x</a>"

    def test_unsafe_image_removed(self):
        assert self.sanitizer.sanitize('a<img src="javascript:x" onerror="y">b') == "ab"

    def test_safe_image_attributes(self):
        result = self.sanitizer.sanitize('<img src="https://x.test/a.png" onerror="y" width="5">')
        image = BeautifulSoup(result, "html.parser").find("img")
        assert image.attrs == {
            "src": "https://x.test/a.png",
            "alt": "",
            "loading": "lazy",
            "referrerpolicy": "no-referrer",
        }

    def test_void_elements_and_entities(self):
        assert self.sanitizer.sanitize("a<br/>b &amp; c") == "a<br>b &amp; c"

    def test_sanitizing_twice_is_stable(self):
        once = self.sanitizer.sanitize('<div><a href="https://x.test">x</a><br><em>y</em></div>')
        assert self.sanitizer.sanitize(once) == once


class TestContentProcessor:
    def setup_method(self):
        self.processor = ContentProcessor.default()

    def test_ubb_pipeline(self):
        assert self.processor.to_safe_html("[b]Hello[/b]") == "<strong>Hello</strong>"

    def test_raw_html_in_ubb_is_escaped(self):
        assert self.processor.to_safe_html("<script>alert(1)</script>") == (
            "&lt;script&gt;alert(1)&lt;/script&gt;"
        )

    def test_html_format_skips_ubb(self):
        assert self.processor.to_safe_html("[b]x[/b]<b>y</b><script>z</script>", "html") == "[b]x[/b]y"

    def test_edge_breaks_trimmed(self):
        assert self.processor.to_safe_html("\n\nHi\nthere\n") == "Hi<br>there"

    def test_trim_edge_breaks(self):
        assert trim_edge_breaks("<br> <br/>x<br>") == "x"
        assert trim_edge_breaks("") == ""
