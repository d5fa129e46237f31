"""Shared pytest fixtures for the Mem MCP server tests."""

import pytest

from mem_mcp.mem_client import MemAPI, MemClient
from mem_mcp.settings import Settings

BASE_URL = "https://mem.test"


class FakeClock:
    """Manually advanced stand-in for ``time.monotonic``."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        mem_api_key="test-key",
        mem_api_base_url=BASE_URL,
        mcp_json_response=True,
        mcp_session_idle_timeout=60.0,
        mcp_reaper_interval=3600.0,
    )


@pytest.fixture
def api():
    return MemAPI(
        v2=MemClient("test-key", base_url=BASE_URL, generation="v2"),
        v0=MemClient("test-key", base_url=BASE_URL, generation="v0"),
    )
