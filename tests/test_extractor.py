"""
Tests for extractor.py.

Covers main-content selection, the body fallback with chrome stripped,
and script/style removal.
"""

from termcrawler.extractor import ContentExtractor, ExtractedContent


class TestExtract:

    def setup_method(self):
        self.extractor = ContentExtractor()

    def test_main_element_wins(self):
        html = """
        <html><body>
          <nav>Home | About</nav>
          <main><h1>Office of Equity</h1><p>Our   DEI office   is open.</p></main>
          <footer>Copyright</footer>
        </body></html>
        """
        result = self.extractor.extract(html)
        assert result.text == "Office of Equity Our DEI office is open."
        assert result.length == len(result.text)

    def test_selector_order(self):
        html = """
        <html><body>
          <div class="entry-content">entry text</div>
          <article>article text</article>
        </body></html>
        """
        assert self.extractor.extract(html).text == "article text"

    def test_body_fallback_strips_chrome(self):
        html = """
        <html><body>
          <header>Site header</header>
          <div class="menu"><ul><li>Menu item</li></ul></div>
          <div id="content">Page body text</div>
          <div class="nondiscrimination">Notice of nondiscrimination</div>
          <footer><nav>Footer nav</nav></footer>
        </body></html>
        """
        text = self.extractor.extract(html).text
        assert text == "Page body text"

    def test_scripts_and_styles_removed(self):
        html = """
        <html><head><style>p { color: red }</style></head><body>
          <main><script>var dei = "office";</script><p>Visible</p><noscript>Enable JS</noscript></main>
        </body></html>
        """
        assert self.extractor.extract(html).text == "Visible"

    def test_empty_html(self):
        result = self.extractor.extract("")
        assert result == ExtractedContent(text="", length=0, preview="")

    def test_preview_is_first_hundred_chars(self):
        body = "word " * 60
        result = self.extractor.extract(f"<main>{body}</main>")
        assert result.preview == result.text[:100]
        assert len(result.preview) == 100
