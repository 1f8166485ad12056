import re

import pytest

from doccrawler.config import Config, load_config


def _clear_env(monkeypatch, keys):
    for k in keys:
        monkeypatch.delenv(k, raising=False)


def test_load_config_defaults(monkeypatch):
    _clear_env(monkeypatch, [
        "ROOT_URL",
        "CONCURRENCY",
        "OUTPUT_FORMAT",
        "IGNORE_URLS",
        "IGNORE_PATTERNS",
        "NAVIGATION_STRATEGY",
        "RETRY_FAILED_URLS",
        "AUTO_RETRY_FAILED",
    ])
    cfg = load_config()
    assert cfg.concurrency == 3
    assert cfg.output_format == "pdf"
    assert cfg.navigation_strategy == "auto"
    assert cfg.retry_failed_urls is True
    assert cfg.auto_retry_failed is False
    assert cfg.ignore_urls == () and cfg.ignore_patterns == ()
    assert cfg.metadata_dir == cfg.output_dir / "metadata"


def test_load_config_env_overrides_and_bounds(monkeypatch, tmp_path):
    monkeypatch.setenv("ROOT_URL", "https://docs.example.com/")
    monkeypatch.setenv("SECTION_ENTRY_POINTS", "https://docs.example.com/api/, https://docs.example.com/")
    monkeypatch.setenv("OUTPUT_DIR", str(tmp_path))
    monkeypatch.setenv("CONCURRENCY", "999")
    monkeypatch.setenv("MAX_RETRIES", "-4")
    monkeypatch.setenv("OUTPUT_FORMAT", "Markdown")
    monkeypatch.setenv("IGNORE_URLS", "/changelog/, /blog/")
    monkeypatch.setenv("IGNORE_PATTERNS", r"\.pdf$")
    monkeypatch.setenv("BROWSER_HEADLESS", "false")

    cfg = load_config()

    assert cfg.concurrency == 64
    assert cfg.max_retries == 1
    assert cfg.output_format == "markdown"
    assert cfg.output_dir == tmp_path
    assert cfg.ignore_urls == ("/changelog/", "/blog/")
    assert cfg.ignore_patterns[0].pattern == r"\.pdf$"
    assert cfg.headless is False
    # root first, duplicate section entry dropped
    assert cfg.entry_points() == ("https://docs.example.com/", "https://docs.example.com/api/")


def test_invalid_ignore_pattern_fails_loudly(monkeypatch):
    monkeypatch.setenv("IGNORE_PATTERNS", "([unclosed")
    with pytest.raises(re.error):
        load_config()


def test_allowed_domains_default_to_root_registrable_domain():
    assert Config(root_url="https://docs.example.com/x").effective_allowed_domains() == ("example.com",)
    assert Config(root_url="https://d.io", allowed_domains=("A.com",)).effective_allowed_domains() == ("a.com",)
    assert Config().effective_allowed_domains() == ()
