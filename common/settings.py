import os
from typing import Literal, Optional, Union

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from common.backoff import Backoff
from common.errors import ConfigError
from common.utils import normalize_address


class Node(BaseModel):
    ws_url: str
    http_url: Optional[str] = None
    connect_timeout: float = 10.0
    idle_timeout: float = 60.0
    request_timeout: float = 30.0

    @field_validator("ws_url")
    @classmethod
    def must_be_websocket(cls, v: str) -> str:
        # allow placeholder during tests by swapping in a safe default
        if "${" in v:
            return "wss://example.invalid"
        if not v.startswith(("wss://", "ws://")):
            raise ValueError("node ws_url must be a ws:// or wss:// URL")
        return v

    @field_validator("http_url")
    @classmethod
    def must_be_http(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if "${" in v:
            return "https://example.invalid"
        if not v.startswith(("https://", "http://")):
            raise ValueError("node http_url must be an http(s) URL")
        return v

    def rpc_url(self) -> str:
        """HTTP endpoint for range queries, derived from the websocket URL when unset."""
        if self.http_url:
            return self.http_url
        if self.ws_url.startswith("wss://"):
            return "https://" + self.ws_url[len("wss://"):]
        return "http://" + self.ws_url[len("ws://"):]


class Contract(BaseModel):
    address: str
    event_set: str = "uniswap_v3_pool"
    start_block: Union[int, Literal["latest"]] = "latest"

    @field_validator("address")
    @classmethod
    def valid_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("start_block")
    @classmethod
    def non_negative(cls, v):
        if isinstance(v, int) and v < 0:
            raise ValueError("start_block must be a non negative integer or 'latest'")
        return v


class DB(BaseModel):
    driver: Literal["sqlite", "postgres"] = "sqlite"
    sqlite_path: str = "data/events.db"
    dsn: Optional[str] = None
    host: Optional[str] = None
    port: int = 5432
    username: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def postgres_needs_target(self):
        if self.driver == "postgres" and not (self.dsn or self.host):
            raise ValueError("postgres driver needs db.dsn or db.host")
        return self


class Pipeline(BaseModel):
    batch_size: int = 100
    flush_interval: float = 2.0
    queue_size: int = 1000
    commit_timeout: float = 30.0
    reconcile_depth: int = 12
    log_chunk: int = 500

    @field_validator("batch_size", "queue_size", "log_chunk")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("reconcile_depth")
    @classmethod
    def depth_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("reconcile_depth must be >= 0")
        return v


class Retry(BaseModel):
    base_delay: float = 0.5
    max_delay: float = 30.0
    max_retries: int = 8
    jitter: float = 0.2

    def backoff(self) -> Backoff:
        return Backoff(
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            max_retries=self.max_retries,
            jitter=self.jitter,
        )


class Logging(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    network: str = "ethereum"
    node: Node
    contract: Contract
    db: DB = DB()
    pipeline: Pipeline = Pipeline()
    retry: Retry = Retry()
    logging: Logging = Logging()


def load_settings(path: str = "config.yaml") -> Settings:
    import yaml
    try:
        with open(path, "r") as f:
            cfg = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e

    # allow secure override via env at runtime
    node = cfg.setdefault("node", {})
    env_ws = os.environ.get("NODE_WS_URL_OVERRIDE")
    if env_ws:
        node["ws_url"] = env_ws
    env_http = os.environ.get("NODE_HTTP_URL_OVERRIDE")
    if env_http:
        node["http_url"] = env_http
    env_dsn = os.environ.get("DATABASE_DSN")
    if env_dsn:
        cfg.setdefault("db", {})["dsn"] = env_dsn

    try:
        return Settings.model_validate(cfg)
    except ValidationError as e:
        raise ConfigError(f"Configuration error in {path}: {e}") from e
