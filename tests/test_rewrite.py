from urllib.parse import unquote

import pytest
from bs4 import BeautifulSoup

from relaygate import rewrite

TARGET = "https://target.example"


class TestRewriteUrl:
    """Single references mapped onto /browse and /external."""

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://target.example/a/b.html", "/browse/a/b.html"),
            ("https://target.example/search?q=1#top", "/browse/search?q=1#top"),
            ("https://target.example", "/browse/"),
            ("/img/logo.png", "/browse/img/logo.png"),
            ("//target.example/x.js", "/browse/x.js"),
            ("style.css", "/browse/style.css"),
        ],
    )
    def test_same_host_goes_to_browse(self, url, expected):
        assert rewrite.rewrite_url(url, TARGET) == expected

    def test_same_host_rewrite_is_idempotent(self):
        once = rewrite.rewrite_url("https://target.example/p?x=1#f", TARGET)
        assert rewrite.rewrite_url(once, TARGET) is None
        assert rewrite.should_skip(once)

    @pytest.mark.parametrize(
        "url",
        [
            "https://cdn.other.example/lib.js?v=2&x=%20y",
            "http://ads.example.net/click?u=https%3A%2F%2Fa.b%2F#frag",
            "https://other.example/path with space",
        ],
    )
    def test_foreign_host_round_trips(self, url):
        rewritten = rewrite.rewrite_url(url, TARGET)
        assert rewritten.startswith("/external/")
        assert unquote(rewritten[len("/external/"):]) == url

    def test_protocol_relative_foreign_uses_target_scheme(self):
        assert rewrite.rewrite_url("//cdn.example/a.js", TARGET) == "/external/https%3A%2F%2Fcdn.example%2Fa.js"

    @pytest.mark.parametrize(
        "url",
        ["data:image/png;base64,AAA", "javascript:void(0)", "mailto:a@b.c", "tel:+123", "#section", "JavaScript:alert(1)"],
    )
    def test_special_schemes_are_never_rewritten(self, url):
        assert rewrite.rewrite_url(url, TARGET) is None

    def test_relative_resolves_against_target_not_gateway(self):
        assert rewrite.rewrite_url("../up.png", TARGET, base_url=TARGET + "/a/b/page.html") == "/browse/a/up.png"


class TestRewriteCss:
    def test_urls_and_imports(self):
        css = "body{background:url(/bg.png)} @import 'https://fonts.example/f.css'; .a{background:url(\"img/x.gif\")}"
        out = rewrite.rewrite_css(css, TARGET)
        assert "url('/browse/bg.png')" in out
        assert "@import '/external/https%3A%2F%2Ffonts.example%2Ff.css'" in out
        assert "url('/browse/img/x.gif')" in out

    def test_twice_is_idempotent(self):
        css = b"a{background:url(https://cdn.example/a.png)} b{background:url('/b.png')} c{background:url(data:image/gif;base64,R0)}"
        once = rewrite.rewrite_css(css, TARGET)
        assert rewrite.rewrite_css(once, TARGET) == once

    def test_external_stylesheet_resolves_against_its_own_url(self):
        out = rewrite.rewrite_css("a{background:url(../img/a.png)}", TARGET, base_url="https://cdn.example/css/site.css")
        assert "url('/external/https%3A%2F%2Fcdn.example%2Fimg%2Fa.png')" in out


class TestRewriteHtml:
    PAGE = """<html><head>
<link rel="stylesheet" href="/main.css">
<meta http-equiv="refresh" content="5; url=/next">
<style>.h{background:url(/hero.jpg)}</style>
</head><body>
<a href="/about">About</a>
<a href="https://elsewhere.example/">Out</a>
<a href="#top">Top</a>
<img src="https://target.example/a.png" srcset="/a-1x.png 1x, https://cdn.example/a-2x.png 2x" data-src="/lazy.png">
<form action="/login" method="post"></form>
<div style="background:url('/d.png')"></div>
<video src="/v.mp4" poster="/p.jpg"></video>
<object data="https://cdn.example/o.swf"></object>
<iframe src="https://frames.example/ad"></iframe>
</body></html>"""

    def _soup(self):
        return BeautifulSoup(rewrite.rewrite_html(self.PAGE.encode(), TARGET), "html.parser")

    def test_attributes_rewritten(self):
        soup = self._soup()
        assert soup.find("link")["href"] == "/browse/main.css"
        anchors = soup.find_all("a")
        assert anchors[0]["href"] == "/browse/about"
        assert anchors[1]["href"] == "/external/https%3A%2F%2Felsewhere.example%2F"
        assert anchors[2]["href"] == "#top"
        img = soup.find("img")
        assert img["src"] == "/browse/a.png"
        assert img["srcset"] == "/browse/a-1x.png 1x, /external/https%3A%2F%2Fcdn.example%2Fa-2x.png 2x"
        assert img["data-src"] == "/browse/lazy.png"
        assert soup.find("form")["action"] == "/browse/login"
        assert soup.find("video")["src"] == "/browse/v.mp4"
        assert soup.find("video")["poster"] == "/browse/p.jpg"
        assert soup.find("object")["data"] == "/external/https%3A%2F%2Fcdn.example%2Fo.swf"
        assert soup.find("iframe")["src"] == "/external/https%3A%2F%2Fframes.example%2Fad"

    def test_styles_and_meta_refresh(self):
        soup = self._soup()
        assert "url('/browse/hero.jpg')" in soup.find("style").string
        assert soup.find("div")["style"] == "background:url('/browse/d.png')"
        assert soup.find("meta")["content"] == "5; url=/browse/next"

    def test_rewriting_rewritten_html_changes_nothing(self):
        once = rewrite.rewrite_html(self.PAGE, TARGET)
        assert rewrite.rewrite_html(once, TARGET) == once


class TestNavigationHtml:
    def test_links_navigate_and_resources_go_external(self):
        html = (
            '<html><body><a href="/deal" target="_blank">Deal</a>'
            '<img src="pic.png"><form action="https://shop.example/buy"></form></body></html>'
        )
        soup = BeautifulSoup(rewrite.rewrite_navigation_html(html, "https://shop.example/dir/page"), "html.parser")
        anchor = soup.find("a")
        assert anchor["href"] == "/navigate?url=https%3A%2F%2Fshop.example%2Fdeal"
        assert not anchor.has_attr("target")
        assert soup.find("img")["src"] == "/external/https%3A%2F%2Fshop.example%2Fdir%2Fpic.png"
        assert soup.find("form")["action"] == "/navigate?url=https%3A%2F%2Fshop.example%2Fbuy"


class TestInjectScript:
    def test_after_head(self):
        out = rewrite.inject_script("<html><head><title>t</title></head></html>", "x=1", at="head")
        assert out.startswith("<html><head><script>x=1</script><title>")

    def test_before_body_close(self):
        out = rewrite.inject_script("<body><p>a</p></body></html>", "y()", at="body")
        assert out == "<body><p>a</p><script>y()</script></body></html>"

    def test_missing_tags(self):
        assert rewrite.inject_script("<p>a</p>", "z", at="head") == "<script>z</script><p>a</p>"
        assert rewrite.inject_script("<p>a</p>", "z", at="body") == "<p>a</p><script>z</script>"
