"""Pytest configuration and fixtures."""

import datetime as dt
import stat
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from filehost.config import Settings
from filehost.db import create_db_engine
from filehost.descriptor import DescriptorBuilder
from filehost.main import create_app
from filehost.ratelimit import RateLimiter
from filehost.service import FileHostService
from filehost.storage import EphemeralStore

pytest_plugins = ("pytest_asyncio",)

FAKE_JADMAKER = """#!{python}
import pathlib
import sys

archive = pathlib.Path(sys.argv[1])
size = archive.stat().st_size
archive.with_name(archive.name + ".jad").write_text(
    "MIDlet-1: Demo, , demo.Main\\n"
    "MIDlet-Info-URL: http://example.invalid/info\\n"
    "MIDlet-Jar-URL: " + archive.name + "\\n"
    "MIDlet-Name: Demo\\n"
    "MIDlet-Vendor: Someone"
    "MIDlet-Jar-Size: " + str(size) + "\\n"
)
"""

BROKEN_JADMAKER = """#!{python}
import sys

sys.stderr.write("cannot read archive\\n")
sys.exit(3)
"""


class FakeClock:
    """Shared wall clock for the store (naive UTC datetimes) and the rate
    limiter (epoch seconds)."""

    def __init__(self, start: dt.datetime = dt.datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.replace(tzinfo=dt.timezone.utc).timestamp()

    def advance(self, **kwargs) -> None:
        self.now += dt.timedelta(**kwargs)


def write_tool(path: Path, source: str) -> Path:
    path.write_text(source.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_jadmaker(tmp_path: Path) -> Path:
    return write_tool(tmp_path / "jadmaker", FAKE_JADMAKER)


@pytest.fixture
def broken_jadmaker(tmp_path: Path) -> Path:
    return write_tool(tmp_path / "broken-jadmaker", BROKEN_JADMAKER)


@pytest.fixture
def cfg(tmp_path: Path, fake_jadmaker: Path) -> Settings:
    data_dir = tmp_path / "data"
    return Settings(
        data_dir=str(data_dir),
        files_dir=str(data_dir / "files"),
        scratch_dir=str(data_dir / "scratch"),
        descriptor_tool=str(fake_jadmaker),
        descriptor_tool_timeout_seconds=10,
    )


@pytest.fixture
def store(cfg: Settings, clock: FakeClock) -> EphemeralStore:
    Path(cfg.data_dir).mkdir(parents=True, exist_ok=True)
    s = EphemeralStore(
        engine=create_db_engine(cfg.db_url),
        files_dir=Path(cfg.files_dir),
        scratch_dir=Path(cfg.scratch_dir),
        ttl=dt.timedelta(seconds=cfg.file_ttl_seconds),
        clock=clock,
    )
    s.prepare()
    return s


@pytest.fixture
def limiter(cfg: Settings, clock: FakeClock) -> RateLimiter:
    return RateLimiter(
        max_request_bytes=cfg.max_request_bytes,
        budget_bytes=cfg.rate_limit_bytes,
        window_seconds=cfg.rate_limit_window_seconds,
        clock=clock.epoch,
    )


@pytest.fixture
def service(cfg: Settings, store: EphemeralStore, limiter: RateLimiter) -> FileHostService:
    return FileHostService(
        store,
        limiter,
        DescriptorBuilder(cfg.descriptor_tool, cfg.descriptor_tool_timeout_seconds),
        max_files=cfg.max_files_per_request,
    )


@pytest.fixture
def client(cfg: Settings, service: FileHostService):
    with TestClient(create_app(cfg, service)) as c:
        yield c


def scratch_entries(cfg: Settings) -> list[Path]:
    return list(Path(cfg.scratch_dir).iterdir())
