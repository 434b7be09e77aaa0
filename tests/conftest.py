"""Shared test fixtures for secure_transmission tests."""

import asyncio
import contextlib
import logging
import os
import signal
import socket
import subprocess
import sys
import tempfile
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import IO, Any

import aiohttp
import pytest
import pytest_asyncio

from secure_transmission.config import SecureConfig
from secure_transmission.core import RequestEncoder
from secure_transmission.crypto import generate_keypair

# Enable secure_transmission debug logging during tests
logging.getLogger("secure_transmission").setLevel(logging.DEBUG)
logging.getLogger("secure_transmission").addHandler(logging.StreamHandler())


KEY_HEADER = "X-Encrypt-Key"
FALLBACK_KEY = "fedcba9876543210"
SIGN_PREFIX = "PFX"
SIGN_TIMEOUT = 300

# Base64 Q and d as exported by a Java (BigInteger-encoded) client
JAVA_PUBLIC_KEY = "BHzIsWjxRinBfh403CsCyG/KplJfjlvbYf6SH7AwdLj5KgubveuCDpL0A/fbpEAL/2WMT7ZiC06CqQk/TScp7E4="
JAVA_PRIVATE_KEY = "AO87VuLgWm9+jP5X2Chx/YezTNCczZUfNwfHSDEuCj9E"


# === Key Fixtures ===


@pytest.fixture(scope="session")
def server_keypair() -> tuple[str, str]:
    """Generate a server SM2 keypair for testing.

    Session-scoped: SM2 in pure Python is slow enough to share one keypair.
    """
    return generate_keypair()


@pytest.fixture
def symmetric_key() -> str:
    """Fixed 16-character SM4 key."""
    return "0123456789abcdef"


# === Config Fixtures ===


@pytest.fixture
def config_factory(server_keypair: tuple[str, str]) -> Callable[..., SecureConfig]:
    """Factory for enabled configs with overridable fields.

    Usage:
        def test_something(config_factory):
            config = config_factory(sign_timeout_seconds=10)
    """
    sk, _ = server_keypair

    def _make_config(**overrides: Any) -> SecureConfig:
        values: dict[str, Any] = {
            "header_key_name": KEY_HEADER,
            "header_fallback_key": FALLBACK_KEY,
            "asymmetric_private_key": sk,
            "sign_timeout_seconds": SIGN_TIMEOUT,
            "sign_prefix": SIGN_PREFIX,
            "enabled": True,
        }
        values.update(overrides)
        return SecureConfig(**values)

    return _make_config


@pytest.fixture
def config(config_factory: Callable[..., SecureConfig]) -> SecureConfig:
    """Enabled config with the default test settings."""
    return config_factory()


@pytest.fixture
def encoder(server_keypair: tuple[str, str], symmetric_key: str) -> RequestEncoder:
    """Client-side encoder using the fixed symmetric key."""
    _, pk = server_keypair
    return RequestEncoder(pk, KEY_HEADER, SIGN_PREFIX, symmetric_key=symmetric_key)


# === E2E Server Fixtures ===


@dataclass
class E2EServer:
    """E2E test server info with log capture."""

    host: str
    port: int
    public_key: str
    _log_file: IO[bytes]

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def get_logs(self) -> str:
        """Read captured server logs."""
        self._log_file.seek(0)
        return self._log_file.read().decode("utf-8", errors="replace")


def get_free_port() -> int:
    """Get a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


async def wait_for_server(host: str, port: int, timeout: float = 10.0) -> None:
    """Wait for server to be ready."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://{host}:{port}/health") as resp:
                    if resp.status == 200:
                        return
        except (aiohttp.ClientError, OSError):
            pass
        await asyncio.sleep(0.1)
    raise TimeoutError(f"Server not ready after {timeout}s")


# Server module path for granian
TEST_SERVER_MODULE = "tests.e2e_server:app"


@pytest_asyncio.fixture
async def granian_server(
    server_keypair: tuple[str, str],
    request: pytest.FixtureRequest,
) -> AsyncIterator[E2EServer]:
    """Start granian serving tests/e2e_server.py with the middleware enabled.

    Function-scoped: each test gets its own server with isolated logs.
    Config is passed through SECURE_TRANSMISSION_* environment variables.
    """
    sk, pk = server_keypair
    port = get_free_port()
    host = "127.0.0.1"

    env = {
        **dict(os.environ),
        "SECURE_TRANSMISSION_HEADER_ENCRYPT_KEY_NAME": KEY_HEADER,
        "SECURE_TRANSMISSION_HEADER_ENCRYPT_KEY_VALUE": FALLBACK_KEY,
        "SECURE_TRANSMISSION_SECRET_KEY": sk,
        "SECURE_TRANSMISSION_SIGN_TIMEOUT": str(SIGN_TIMEOUT),
        "SECURE_TRANSMISSION_SIGN_PREFIX": SIGN_PREFIX,
        "SECURE_TRANSMISSION_ENABLED": "true",
    }

    # Note: intentionally not using context manager - file must stay open across yield
    log_file = tempfile.TemporaryFile(mode="w+b")

    # New process group so granian and its workers are killed together
    proc = subprocess.Popen(
        [
            sys.executable,
            "-m",
            "granian",
            TEST_SERVER_MODULE,
            "--interface",
            "asgi",
            "--host",
            host,
            "--port",
            str(port),
            "--workers",
            "1",
            "--log-level",
            "info",
        ],
        env=env,
        stdout=log_file,
        stderr=log_file,
        start_new_session=True,
    )

    def _kill_process_group(sig: int) -> None:
        """Kill the entire process group (granian + workers)."""
        with contextlib.suppress(ProcessLookupError, OSError):
            os.killpg(os.getpgid(proc.pid), sig)

    server = E2EServer(host=host, port=port, public_key=pk, _log_file=log_file)
    try:
        await wait_for_server(host, port)
        yield server
    finally:
        _kill_process_group(signal.SIGTERM)
        try:
            proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            _kill_process_group(signal.SIGKILL)
            proc.wait()
        logs = server.get_logs()
        if logs.strip():
            test_name: str = request.node.name  # type: ignore[attr-defined]
            sys.stdout.write(f"\n{'=' * 60}\nServer logs for: {test_name}\n{'=' * 60}\n{logs}\n")
            sys.stdout.flush()
        log_file.close()
