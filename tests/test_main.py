"""Tests for the command line entry point."""
import asyncio

import orjson
import pytest

from oem_monitor import main as cli
from oem_monitor.crawl.models import PageCategory
from oem_monitor.store.state import StateDB


def test_parse_args_defaults():
    """No flags means one full run over every site."""
    args = cli.parse_args([])
    assert args.site is None
    assert args.track is None
    assert args.category == "other"
    assert not args.dry_run
    assert not args.flush_spool
    assert not args.estimate


def test_track_registers_pages(tmp_path, monkeypatch):
    """--track stores the URLs for the site and exits cleanly."""
    db_path = tmp_path / "state.db"
    monkeypatch.setattr(cli, "StateDB", lambda: StateDB(db_path))

    with pytest.raises(SystemExit) as exc_info:
        cli.main([
            "--sites-file", str(tmp_path / "missing.json"),
            "--site", "ford-au",
            "--track", "https://www.ford.com.au/offers", "https://www.ford.com.au/",
            "--category", "offers",
        ])
    assert exc_info.value.code == 0

    pages = asyncio.run(StateDB(db_path).list_pages("ford-au"))
    assert [p.url for p in pages] == ["https://www.ford.com.au/", "https://www.ford.com.au/offers"]
    assert all(p.page_category == PageCategory.OFFERS for p in pages)


def test_track_without_site_fails(tmp_path, monkeypatch):
    """--track needs a site id."""
    monkeypatch.setattr(cli, "StateDB", lambda: StateDB(tmp_path / "state.db"))
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--sites-file", str(tmp_path / "missing.json"), "--track", "https://www.ford.com.au/"])
    assert exc_info.value.code == 1


def test_estimate_reads_sites_file(tmp_path, monkeypatch):
    """--estimate runs without render or Supabase settings."""
    sites_file = tmp_path / "sites.json"
    sites_file.write_bytes(orjson.dumps([{"site_id": "ford-au", "monthly_render_cap": 10}]))
    db = StateDB(tmp_path / "state.db")
    asyncio.run(db.initialize())
    asyncio.run(db.track("https://www.ford.com.au/", "ford-au", PageCategory.HOMEPAGE))
    monkeypatch.setattr(cli, "StateDB", lambda: db)

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--sites-file", str(sites_file), "--estimate"])
    assert exc_info.value.code == 0
