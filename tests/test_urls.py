import pytest

from marrow.exceptions import InvalidUrl
from marrow.urls import domain_of, normalize_url, to_full_url


def test_normalize_strips_protocol_www_and_trailing_slash():
    result = normalize_url("https://Developer.Flutterwave.com/v3.0/docs/")
    assert result.domain == "developer.flutterwave.com"
    assert result.url == "developer.flutterwave.com/v3.0/docs"


def test_normalize_root_and_www():
    assert normalize_url("http://www.Example.com/").url == "example.com"
    assert normalize_url("example.com").url == "example.com"


def test_normalize_keeps_query_drops_fragment_and_port():
    result = normalize_url("https://shop.example.com:8443/search/?q=shoes#top")
    assert result.domain == "shop.example.com"
    assert result.url == "shop.example.com/search?q=shoes"


@pytest.mark.parametrize("raw", [
    "https://Developer.Flutterwave.com/v3.0/docs/",
    "news.ycombinator.com",
    "HTTP://WWW.EXAMPLE.COM/a/b/?x=1&y=2",
    "example.com/path//",
    "  https://example.com/jobs?page=2  ",
    "https://www.www.example.com/jobs",
    "http://[::1]:8080/x",
])
def test_normalize_is_idempotent(raw):
    first = normalize_url(raw)
    assert normalize_url(first.url) == first


@pytest.mark.parametrize("raw", ["", "   ", "https://", "http:///path"])
def test_normalize_rejects_hostless_input(raw):
    with pytest.raises(InvalidUrl):
        normalize_url(raw)


def test_invalid_url_is_a_value_error():
    with pytest.raises(ValueError):
        normalize_url("")


def test_to_full_url():
    assert to_full_url("example.com/a") == "https://example.com/a"
    assert to_full_url("HTTP://example.com") == "HTTP://example.com"
    assert to_full_url(" http://x.io ") == "http://x.io"


def test_domain_of():
    assert domain_of("https://www.linkedin.com/jobs/") == "linkedin.com"


def test_normalize_strips_every_leading_www():
    assert normalize_url("https://www.www.example.com/jobs").url == "example.com/jobs"
    assert normalize_url("www.example.com").domain == "example.com"


def test_normalize_keeps_ipv6_hosts_bracketed():
    result = normalize_url("http://[::1]:8080/x")
    assert result.domain == "[::1]"
    assert result.url == "[::1]/x"
