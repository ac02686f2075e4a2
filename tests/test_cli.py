from pathlib import Path

import pytest

from common.errors import PersistUnavailable
from common.settings import load_settings
from ingestion.chain_link import ChainLink
from storage.sqlite_backend import SQLiteEventStore
from streaming import cli

ABI = Path(__file__).resolve().parents[1] / "abi" / "erc20.json"

CONFIG = """
node:
  ws_url: "ws://localhost:8546"
contract:
  address: "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
  event_set: {event_set}
  start_block: {start_block}
db:
  driver: sqlite
  sqlite_path: {db}
pipeline:
  reconcile_depth: 40
"""


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.delenv("NODE_WS_URL_OVERRIDE", raising=False)
    monkeypatch.delenv("DATABASE_DSN", raising=False)

    def _write(event_set="erc20", start_block="latest"):
        p = tmp_path / "config.yaml"
        p.write_text(
            CONFIG.format(event_set=event_set, start_block=start_block, db=tmp_path / "idx.db"),
            encoding="utf-8",
        )
        return str(p)

    return _write


def test_bootstrap_then_status(config, capsys):
    path = config()
    assert cli.main(["--config", path, "bootstrap"]) == 0
    assert cli.main(["--config", path, "status"]) == 0
    out = capsys.readouterr().out
    assert "Schema ready (sqlite)" in out
    assert "checkpoint: none, events: 0" in out


def test_status_without_schema_reports_error(config, capsys):
    assert cli.main(["--config", config(), "status"]) == 1
    assert "run bootstrap first" in capsys.readouterr().err


def test_unknown_event_set_is_config_error(config, capsys):
    assert cli.main(["--config", config(event_set="nope"), "run"]) == 1
    assert "contract.event_set" in capsys.readouterr().err


def test_build_pipeline_wiring(config):
    settings = load_settings(config(start_block=123))
    coord = cli.build_pipeline(settings)
    assert isinstance(coord.source, ChainLink)
    assert coord.source.reconcile_depth == 40
    assert coord.start_block == 123
    assert coord.dedup_window == 80
    assert set(coord.source.log_filter.topics) == set(coord.decoder.topics)
    coord.sink.store.close()


def test_latest_start_block_means_node_head(config):
    coord = cli.build_pipeline(load_settings(config()))
    assert coord.start_block is None
    coord.sink.store.close()


def test_generate_writes_module(tmp_path, capsys):
    out = tmp_path / "erc20_events.py"
    rc = cli.main(["generate", "--abi", str(ABI), "--out", str(out), "--name", "ERC20"])
    assert rc == 0
    assert "with 2 events" in capsys.readouterr().out
    assert "class Transfer(DecodedEvent)" in out.read_text(encoding="utf-8")


@pytest.mark.parametrize("error", [None, PersistUnavailable("database is locked")])
def test_run_closes_store(config, monkeypatch, tmp_path, error):
    store = SQLiteEventStore(str(tmp_path / "run.db"))
    closed = []
    monkeypatch.setattr(store, "close", lambda: closed.append(True))
    monkeypatch.setattr(cli, "make_store", lambda settings: store)

    async def fake_run(coord):
        assert coord.sink.store is store
        if error is not None:
            raise error

    monkeypatch.setattr(cli, "_run_pipeline", fake_run)
    assert cli.main(["--config", config(), "run"]) == (0 if error is None else 1)
    assert closed == [True]
