from pathlib import Path

import run_crawl


def test_cli_overrides_env_config(monkeypatch, tmp_path):
    monkeypatch.setenv("ROOT_URL", "https://env.example.com/")
    monkeypatch.setenv("CONCURRENCY", "2")
    args = run_crawl.parse_args([
        "--root-url", "https://docs.example.com/",
        "--entry", "https://docs.example.com/api/",
        "--entry", "https://docs.example.com/guide/",
        "--output-dir", str(tmp_path),
        "--concurrency", "0",
        "--format", "markdown",
        "--retry-failed",
        "--log-level", "DEBUG",
    ])

    cfg = run_crawl.build_config(args)

    assert cfg.root_url == "https://docs.example.com/"
    assert cfg.section_entry_points == ("https://docs.example.com/api/", "https://docs.example.com/guide/")
    assert cfg.output_dir == Path(tmp_path)
    assert cfg.concurrency == 1
    assert cfg.output_format == "markdown"
    assert cfg.auto_retry_failed is True
    assert cfg.log_level == "DEBUG"


def test_cli_without_flags_keeps_env(monkeypatch):
    monkeypatch.delenv("AUTO_RETRY_FAILED", raising=False)
    monkeypatch.setenv("ROOT_URL", "https://env.example.com/")
    monkeypatch.setenv("CONCURRENCY", "5")
    cfg = run_crawl.build_config(run_crawl.parse_args([]))
    assert cfg.root_url == "https://env.example.com/"
    assert cfg.concurrency == 5
    assert cfg.auto_retry_failed is False
