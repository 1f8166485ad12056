# tests/test_utils.py
from doccrawler import utils


def test_normalize_url():
    assert utils.normalize_url("HTTPS://Docs.Example.com:443/Guide/#top") == "https://docs.example.com/Guide"
    assert utils.normalize_url("http://Example.com:80/") == "http://example.com/"
    assert utils.normalize_url("https://x.com:8443/a?b=2&a=1") == "https://x.com:8443/a?a=1&b=2"
    assert utils.normalize_url("not a url") == "not a url"
    assert utils.normalize_url("http://[::1") == "http://[::1"


def test_normalize_for_entry_comparison():
    a = utils.normalize_for_entry_comparison("https://D.com/docs/api/?v=1#x")
    assert a == utils.normalize_for_entry_comparison("https://d.com/docs/api")


def test_resolve_link():
    base = "https://d.com/docs/guide/"
    assert utils.resolve_link("intro", base) == "https://d.com/docs/guide/intro"
    assert utils.resolve_link("/api", base) == "https://d.com/api"
    for href in ("#top", "javascript:void(0)", "mailto:a@d.com", "tel:123", "data:x", "", "ftp://d.com/f"):
        assert utils.resolve_link(href, base) is None


def test_domains():
    assert utils.get_base_domain("www.docs.example.co.uk") == "example.co.uk"
    assert utils.get_base_domain("") == ""
    assert utils.host_matches("api.example.com", ["example.com"])
    assert not utils.host_matches("example.com.evil.org", ["example.com"])
    assert utils.is_http_url("https://x")
    assert not utils.is_http_url("ftp://x")


def test_slugify():
    assert utils.slugify(" Hello, World! ") == "hello-world"
    assert utils.slugify("A" * 500).startswith("a" * 80)
    assert utils.slugify("!!!") == "untitled"


def test_titles():
    assert utils.clean_title("Getting Started | Acme Docs") == "Getting Started"
    assert utils.clean_title("  Overview  ") == "Overview"
    assert utils.clean_title(None) == ""
    assert utils.title_from_url("https://d.com/docs/getting-started/") == "Getting Started"
    assert utils.title_from_url("https://d.com/") == "Section"


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("X_INT", "999")
    monkeypatch.setenv("X_BAD", "abc")
    monkeypatch.setenv("X_BOOL", "yes")
    monkeypatch.setenv("X_CSV", " a, ,b ")
    assert utils.getenv_int("X_INT", 1, 1, 10) == 10
    assert utils.getenv_int("X_BAD", 5) == 5
    assert utils.getenv_float("X_INT", 0.0, max_val=2.5) == 2.5
    assert utils.getenv_bool("X_BOOL", False) is True
    assert utils.getenv_csv("X_CSV", "") == ("a", "b")
    assert utils.getenv_str("X_MISSING", "dflt") == "dflt"


def test_atomic_write_text(tmp_path):
    target = tmp_path / "sub" / "f.txt"
    utils.atomic_write_text(target, "one")
    utils.atomic_write_text(target, "two")
    assert target.read_text() == "two"
    assert [p.name for p in target.parent.iterdir()] == ["f.txt"]
