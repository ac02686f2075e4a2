import pathlib

from common.settings import load_settings

ROOT = pathlib.Path(__file__).resolve().parents[1]


def test_config_file_exists_and_has_placeholders():
    cfg = ROOT / "config.yaml"
    assert cfg.exists(), "config.yaml missing at project root"
    text = cfg.read_text(encoding="utf-8")

    forbidden = ["ws://", "wss://", "http://", "https://", "postgresql://", "AKIA", "AIza", "password:", "secret:", "token:"]

    def safe(line: str) -> bool:
        if "${" in line:
            return True
        return not any(bad in line for bad in forbidden)

    assert all(safe(line) for line in text.splitlines()), "config.yaml contains potential secrets or live URLs"


def test_shipped_config_validates(monkeypatch):
    monkeypatch.delenv("NODE_WS_URL_OVERRIDE", raising=False)
    monkeypatch.delenv("NODE_HTTP_URL_OVERRIDE", raising=False)
    monkeypatch.delenv("DATABASE_DSN", raising=False)
    s = load_settings(str(ROOT / "config.yaml"))
    assert s.contract.event_set == "uniswap_v3_pool"
    assert s.contract.start_block == "latest"
    assert s.pipeline.reconcile_depth == 12
    assert s.db.driver == "sqlite"
