# test_main.py
#
# Command line entry point: config file -> logging -> database -> controller.
#
# Imports
import sys
#
# Third-Party Imports
import httpx
import pytest
from loguru import logger
#
# Local Imports
from asset_sync import config as config_module
from asset_sync.__main__ import build_encryption, main_async, parse_args
#
#######################################################################################################################
#
# Functions:

@pytest.fixture(autouse=True)
def fresh_config_cache(monkeypatch):
    monkeypatch.setattr(config_module, "_CONFIG_CACHE", None)
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        "[sync]\n"
        'server_url = "http://sync.test"\n'
        "retry_attempts = 1\n"
        "[database]\n"
        f'sync_db_path = "{(tmp_path / "data" / "sync.db").as_posix()}"\n'
        "[device]\n"
        'device_id = "cli-device"\n'
        "[logging]\n"
        f'log_file = "{(tmp_path / "logs" / "sync.log").as_posix()}"\n',
        encoding="utf-8",
    )
    return path


class RecordingTransport:
    def __init__(self):
        self.requests = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200, json={"changes": [], "has_more": False, "last_sequence_id": 0})


def test_parse_args_defaults():
    args = parse_args([])
    assert (args.mode, args.user_id, args.config, args.log_level) == ("once", "default", None, None)
    assert parse_args(["auto", "--user-id", "alice"]).mode == "auto"


def test_build_encryption_needs_passphrase(monkeypatch):
    monkeypatch.delenv("ASSET_SYNC_PASSPHRASE", raising=False)
    assert build_encryption("alice") is None

    monkeypatch.setenv("ASSET_SYNC_PASSPHRASE", "correct horse")
    service = build_encryption("alice")
    assert service is not None and service.is_ready()


@pytest.mark.asyncio
async def test_once_without_passphrase_skips_network(monkeypatch, tmp_path, config_file):
    monkeypatch.delenv("ASSET_SYNC_PASSPHRASE", raising=False)
    recorder = RecordingTransport()

    code = await main_async(parse_args(["once", "--config", str(config_file)]), transport=recorder.transport)

    assert code == 0
    assert recorder.requests == []
    assert (tmp_path / "data" / "sync.db").exists()
    await logger.complete()
    assert "ASSET_SYNC_PASSPHRASE is not set" in (tmp_path / "logs" / "sync.log").read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_once_pulls_changes_with_configured_device(monkeypatch, tmp_path, config_file):
    monkeypatch.setenv("ASSET_SYNC_PASSPHRASE", "correct horse")
    recorder = RecordingTransport()

    code = await main_async(
        parse_args(["once", "--config", str(config_file), "--log-level", "debug"]),
        transport=recorder.transport,
    )

    assert code == 0
    assert [r.url.path for r in recorder.requests] == ["/v1/sync/changes"]
    assert recorder.requests[0].headers["X-Device-ID"] == "cli-device"

#
# End of test_main.py
#######################################################################################################################
