import pytest

from relaygate import content_types

ERROR_PAGE = b"<!DOCTYPE html><html><head><title>404 Not Found</title></head><body>Not Found</body></html>"


class TestCorrectMimeType:
    """Extension beats the declared type; Accept and URL patterns come next."""

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/static/site.css", "text/css; charset=utf-8"),
            ("/app.js?v=3", "application/javascript; charset=utf-8"),
            ("https://cdn.example/font.woff2", "font/woff2"),
            ("/logo.SVG", "image/svg+xml"),
        ],
    )
    def test_extension_wins_over_declared_html(self, path, expected):
        assert content_types.correct_mime_type(path, "text/html") == expected

    def test_accept_header_when_no_extension(self):
        assert content_types.correct_mime_type("/asset", "text/html", "text/css,*/*;q=0.1") == "text/css; charset=utf-8"

    def test_url_pattern_only_without_document_accept(self):
        assert content_types.correct_mime_type("/wp-content/styles/main", "text/html") == "text/css; charset=utf-8"
        assert content_types.correct_mime_type("/lifestyle/", "text/html; charset=utf-8", "text/html,*/*") == (
            "text/html; charset=utf-8"
        )

    def test_falls_back_to_declared_then_octet_stream(self):
        assert content_types.correct_mime_type("/data", "application/json") == "application/json"
        assert content_types.correct_mime_type("/blob", "") == content_types.DEFAULT_TYPE


class TestHtmlErrorPages:
    def test_css_path_with_html_error_page_becomes_empty_css(self):
        content_type, body = content_types.correct_response("/theme/site.css", "text/html; charset=utf-8", ERROR_PAGE)
        assert content_type.startswith("text/css")
        assert body == b""

    def test_genuine_css_is_kept(self):
        content_type, body = content_types.correct_response("/site.css", "text/css", b"a{color:red}")
        assert content_type == "text/css; charset=utf-8"
        assert body == b"a{color:red}"

    def test_html_page_for_html_request_is_kept(self):
        content_type, body = content_types.correct_response("/about", "text/html", ERROR_PAGE, "text/html")
        assert content_type == "text/html"
        assert body == ERROR_PAGE

    def test_detection_requires_html_declaration(self):
        assert not content_types.is_html_error_page(ERROR_PAGE, "text/css")
        assert content_types.is_html_error_page(ERROR_PAGE, "text/html")


def test_charset_of():
    assert content_types.charset_of("text/html; charset=ISO-8859-1") == "ISO-8859-1"
    assert content_types.charset_of('text/css; charset="utf-8"') == "utf-8"
    assert content_types.charset_of("image/png") == "utf-8"


def test_empty_fallback_type():
    assert content_types.empty_fallback_type("/x/y.js") == "application/javascript; charset=utf-8"
    assert content_types.empty_fallback_type("/x/y") == "application/octet-stream"
