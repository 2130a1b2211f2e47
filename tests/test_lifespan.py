"""Tests for wiki_daemon.daemon.lifespan: daemon startup/shutdown lifecycle.

Tests the daemon_lifespan() async context manager which:
- Loads config from env vars, CLI overrides and the YAML file
- Creates WikiClient and checks the connection (failure only warns)
- Initializes concurrency semaphore
- Loads the persisted sync state (corrupt state fails fast)
- Prints status messages to stderr
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from wiki_daemon.config import Config
from wiki_daemon.config_schema import build_config
from wiki_daemon.daemon.lifespan import daemon_lifespan
from wiki_daemon.errors import (
    ConfigurationError,
    CorruptStateError,
    TransientIOError,
)
from wiki_daemon.sync.state import StateStore

# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------

MODULE = "wiki_daemon.daemon.lifespan"


def _make_config(tmp_path, **overrides):
    """Create a valid Config for testing."""
    defaults = {
        "wiki_url": "https://wiki.example.com",
        "username": "testuser",
        "password": "testpass",
        "watch_folder": str(tmp_path / "watch"),
        "state_file": str(tmp_path / "state.json"),
        "max_parallel_requests": 5,
    }
    defaults.update(overrides)
    return Config(**defaults)


def _client(space_count: int = 1) -> MagicMock:
    client = MagicMock()
    client.validate_connection.return_value = space_count
    return client


async def _call(func, *args, **kwargs):
    return func(*args, **kwargs)


@pytest.fixture
def no_files():
    """Keep .env and config files on the developer machine out of the way."""
    with (
        patch(f"{MODULE}.load_dotenv"),
        patch(f"{MODULE}.load_file_config", return_value=(None, None)),
    ):
        yield


# -------------------------------------------------------------------------
# daemon_lifespan(): successful startup
# -------------------------------------------------------------------------


class TestDaemonLifespanSuccess:
    """Tests for the happy path through daemon_lifespan()."""

    async def test_successful_startup(self, tmp_path, no_files):
        mock_client = MagicMock()
        mock_client.validate_connection.return_value = 3
        config = _make_config(tmp_path)

        with (
            patch(f"{MODULE}.load_config", return_value=config),
            patch(f"{MODULE}.WikiClient", return_value=mock_client),
            patch(f"{MODULE}.run_sync", side_effect=_call) as mock_run_sync,
            patch(f"{MODULE}.init_semaphore") as mock_init_sem,
            patch(f"{MODULE}._stderr_print"),
        ):
            async with daemon_lifespan() as ctx:
                assert ctx["config"] is config
                assert ctx["client"] is mock_client
                assert isinstance(ctx["state"], StateStore)
                assert ctx["state"].state_file == Path(config.state_file)
                mock_run_sync.assert_any_call(mock_client.validate_connection)
                mock_init_sem.assert_called_once_with(5)

    async def test_overrides_passed_to_load_config(self, tmp_path, no_files):
        config = _make_config(tmp_path)

        with (
            patch(f"{MODULE}.load_config", return_value=config) as mock_load,
            patch(f"{MODULE}.WikiClient", return_value=_client()),
            patch(f"{MODULE}.run_sync", side_effect=_call),
            patch(f"{MODULE}.init_semaphore"),
            patch(f"{MODULE}._stderr_print"),
        ):
            async with daemon_lifespan({"space_id": 4}):
                pass

        mock_load.assert_called_once_with(
            overrides={"space_id": 4}, yaml_fallbacks=None
        )

    async def test_yaml_file_supplies_fallbacks(self, tmp_path):
        config = _make_config(tmp_path)
        unified = build_config(
            {"wiki": {"url": "https://yaml.example.com"}, "daemon": {"space_id": 7}}
        )

        with (
            patch(f"{MODULE}.load_dotenv"),
            patch(
                f"{MODULE}.load_file_config",
                return_value=(unified, tmp_path / "config.yml"),
            ),
            patch(f"{MODULE}.load_config", return_value=config) as mock_load,
            patch(f"{MODULE}.WikiClient", return_value=_client()),
            patch(f"{MODULE}.run_sync", side_effect=_call),
            patch(f"{MODULE}.init_semaphore"),
            patch(f"{MODULE}._stderr_print") as mock_print,
        ):
            async with daemon_lifespan():
                pass

        fallbacks = mock_load.call_args[1]["yaml_fallbacks"]
        assert fallbacks["url"] == "https://yaml.example.com"
        assert fallbacks["space_id"] == 7
        printed = " ".join(str(c.args[0]) for c in mock_print.call_args_list)
        assert "config file" in printed

    async def test_connection_failure_only_warns(self, tmp_path, no_files):
        mock_client = MagicMock()
        mock_client.validate_connection.side_effect = TransientIOError(
            "connection refused"
        )
        config = _make_config(tmp_path)

        with (
            patch(f"{MODULE}.load_config", return_value=config),
            patch(f"{MODULE}.WikiClient", return_value=mock_client),
            patch(f"{MODULE}.run_sync", side_effect=_call),
            patch(f"{MODULE}.init_semaphore"),
            patch(f"{MODULE}._stderr_print") as mock_print,
        ):
            async with daemon_lifespan() as ctx:
                assert ctx["client"] is mock_client

        printed = " ".join(str(c.args[0]) for c in mock_print.call_args_list)
        assert "WARNING: Wiki connection check failed" in printed

    async def test_existing_state_loaded(self, tmp_path, no_files):
        config = _make_config(tmp_path)
        seed = StateStore(Path(config.state_file))
        seed.load()
        watched = tmp_path / "watch" / "a.md"
        watched.parent.mkdir(parents=True)
        watched.write_text("x")
        seed.track_file(watched, "a.md")

        with (
            patch(f"{MODULE}.load_config", return_value=config),
            patch(f"{MODULE}.WikiClient", return_value=_client()),
            patch(f"{MODULE}.run_sync", side_effect=_call),
            patch(f"{MODULE}.init_semaphore"),
            patch(f"{MODULE}._stderr_print"),
        ):
            async with daemon_lifespan() as ctx:
                assert ctx["state"].is_document_tracked("a.md")


# -------------------------------------------------------------------------
# daemon_lifespan(): startup failures
# -------------------------------------------------------------------------


class TestDaemonLifespanFailures:
    async def test_configuration_error_propagates(self, no_files):
        with (
            patch(
                f"{MODULE}.load_config",
                side_effect=ConfigurationError("Missing required configuration"),
            ),
            patch(f"{MODULE}._stderr_print") as mock_print,
        ):
            with pytest.raises(ConfigurationError, match="Missing required"):
                async with daemon_lifespan():
                    pass

        printed = " ".join(str(c.args[0]) for c in mock_print.call_args_list)
        assert "ERROR: Configuration error" in printed

    async def test_plain_value_error_wrapped(self, no_files):
        with (
            patch(f"{MODULE}.load_config", side_effect=ValueError("bad value")),
            patch(f"{MODULE}._stderr_print"),
        ):
            with pytest.raises(ConfigurationError, match="bad value"):
                async with daemon_lifespan():
                    pass

    async def test_corrupt_state_fails_fast(self, tmp_path, no_files):
        config = _make_config(tmp_path)
        Path(config.state_file).write_text("{broken")

        with (
            patch(f"{MODULE}.load_config", return_value=config),
            patch(f"{MODULE}.WikiClient", return_value=_client()),
            patch(f"{MODULE}.run_sync", side_effect=_call),
            patch(f"{MODULE}.init_semaphore"),
            patch(f"{MODULE}._stderr_print") as mock_print,
        ):
            with pytest.raises(CorruptStateError):
                async with daemon_lifespan():
                    pass

        printed = " ".join(str(c.args[0]) for c in mock_print.call_args_list)
        assert "Fix or remove the state file" in printed
