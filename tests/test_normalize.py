"""Tests for HTML normalization and content hashing."""
from oem_monitor.parse.normalize import compute_content_hash, normalize_html, strip_tracking_params

PAGE = """
<html>
  <head>
    <title>Ranger range</title>
    <script>window.__BUILD__ = "8f2c1a9d";</script>
    <style>.hero { color: red; }</style>
  </head>
  <body>
    <!-- rendered at 12:00:01 -->
    <div class="{cls}" data-track="hero-{n}" id="c{id}">
      <h1>Ranger XLT</h1>
      <a href="/ranger?utm_source=newsletter&trim=xlt">Explore</a>
    </div>
    <div class="cookie-banner">We use cookies</div>
  </body>
</html>
"""


def render(cls="hero", n="1", id="9a8b7c6d5e4f", price="$41,000"):
    return PAGE.replace("{cls}", cls).replace("{n}", n).replace("{id}", id).replace(
        "Ranger XLT", f"Ranger XLT {price}"
    )


def test_class_only_change_keeps_hash():
    """Class, data-* and build-hash id churn does not move the hash."""
    before = render(cls="hero", n="1", id="9a8b7c6d5e4f")
    after = render(cls="hero hero--v2 css-1x2y3z", n="2", id="0f1e2d3c4b5a")
    assert compute_content_hash(before) == compute_content_hash(after)


def test_text_change_moves_hash():
    """Visible text changes move the hash."""
    assert compute_content_hash(render(price="$41,000")) != compute_content_hash(render(price="$39,000"))


def test_scripts_comments_and_cookie_banner_removed():
    """Scripts, styles, comments and consent widgets are not part of the canonical form."""
    normalized = normalize_html(render())
    assert "__BUILD__" not in normalized
    assert "color: red" not in normalized
    assert "rendered at" not in normalized
    assert "We use cookies" not in normalized
    assert "Ranger XLT" in normalized


def test_tracking_params_stripped_from_links():
    """utm_* parameters are dropped from link targets, other params kept."""
    normalized = normalize_html(render())
    assert "utm_source" not in normalized
    assert "trim=xlt" in normalized


def test_whitespace_collapsed():
    """Whitespace between and inside tags does not move the hash."""
    a = "<html><body><p>Hello   world</p>\n\n   <p>Again</p></body></html>"
    b = "<html><body><p>Hello world</p><p>Again</p></body></html>"
    assert compute_content_hash(a) == compute_content_hash(b)


def test_empty_html():
    """Empty input normalizes to an empty string."""
    assert normalize_html("") == ""
    assert normalize_html(None) == ""


def test_strip_tracking_params():
    """Click ids and session ids are dropped, the rest of the URL is untouched."""
    url = "https://www.example.com/offers?gclid=abc&model=ranger&sessionid=42#top"
    assert strip_tracking_params(url) == "https://www.example.com/offers?model=ranger#top"
    assert strip_tracking_params("https://www.example.com/") == "https://www.example.com/"
