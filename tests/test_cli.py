"""Tests for the aerotodo-sync command-line interface."""

import datetime as dt
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from aerotodo_sync import __version__, cli
from aerotodo_sync.auth import CredentialBundle, CredentialStore, TokenRefresher
from aerotodo_sync.cli import build_parser, main
from aerotodo_sync.errors import AuthRevokedError
from aerotodo_sync.state import JsonSettingsStore
from aerotodo_sync.sync.engine import Reconciler
from aerotodo_sync.sync.links import LinkStore, LinkTable
from aerotodo_sync.sync.models import SyncLink, TaskDraft
from aerotodo_sync.sync.policy import PolicyStore, SyncPolicy
from aerotodo_sync.sync.ports import JsonTaskStore
from aerotodo_sync.sync.scheduler import SyncScheduler

EXPIRES = dt.datetime(2030, 1, 1, tzinfo=dt.timezone.utc)
JUNE_1 = dt.date(2024, 6, 1)


@pytest.fixture(autouse=True)
def quiet_startup():
    with (
        patch("aerotodo_sync.cli.setup_logging"),
        patch("aerotodo_sync.cli.load_dotenv"),
        patch("aerotodo_sync.cli.load_hierarchical_config", return_value={}),
    ):
        yield


@pytest.fixture
def settings_path(tmp_path):
    return tmp_path / "settings.json"


def _run(settings_path, *argv):
    return main(["--settings", str(settings_path), *argv])


def _connect(settings_path):
    store = JsonSettingsStore(settings_path)
    CredentialStore(store).set(
        CredentialBundle(access_token="a", refresh_token="r", expires_at=EXPIRES)
    )
    LinkStore(store).save(
        LinkTable(
            [
                SyncLink(
                    local_task_id="t1",
                    remote_event_id="e1",
                    last_synced_local_updated_at=EXPIRES,
                    last_synced_remote_updated_at=EXPIRES,
                )
            ]
        )
    )
    return store


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["--version"])

        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out


class TestConnect:
    def test_connect_with_flags(self, settings_path, capsys):
        code = _run(
            settings_path,
            "connect",
            "--access-token",
            "a",
            "--refresh-token",
            "r",
            "--expires-in",
            "600",
        )

        assert code == 0
        store = JsonSettingsStore(settings_path)
        assert CredentialStore(store).require().refresh_token == "r"
        assert PolicyStore(store).load().enabled is True
        assert "Connected." in capsys.readouterr().out

    def test_connect_with_token_file(self, settings_path, tmp_path):
        token_file = tmp_path / "tokens.json"
        token_file.write_text(
            json.dumps(
                {
                    "access_token": "a",
                    "refresh_token": "r",
                    "expires_at": EXPIRES.isoformat(),
                }
            )
        )

        assert _run(settings_path, "connect", "--token-file", str(token_file)) == 0

        bundle = CredentialStore(JsonSettingsStore(settings_path)).require()
        assert bundle.expires_at == EXPIRES

    def test_connect_reenables_disabled_policy(self, settings_path):
        store = JsonSettingsStore(settings_path)
        PolicyStore(store).save(SyncPolicy(two_way=True))
        PolicyStore(store).disable("authorization revoked")

        _run(settings_path, "connect", "--access-token", "a", "--refresh-token", "r")

        status = PolicyStore(store).status()
        assert status["policy"]["enabled"] is True
        assert status["policy"]["two_way"] is True
        assert status["disabled_reason"] is None

    def test_connect_without_refresh_token_fails(self, settings_path, capsys):
        code = _run(settings_path, "connect", "--access-token", "a")

        assert code == 1
        assert "refresh token" in capsys.readouterr().err
        assert not settings_path.exists()


class TestStatus:
    def test_status_json(self, settings_path, capsys):
        _connect(settings_path)

        assert _run(settings_path, "status", "--json") == 0

        data = json.loads(capsys.readouterr().out)
        assert data["connected"] is True
        assert data["links"] == 1
        assert data["last_sync_at"] is None
        assert data["policy"]["enabled"] is True

    def test_status_text_not_connected(self, settings_path, capsys):
        assert _run(settings_path, "status") == 0

        out = capsys.readouterr().out
        assert "Connected:      no" in out
        assert "Last sync:      never" in out


class TestDisconnect:
    def test_disconnect_clears_links(self, settings_path, capsys):
        store = _connect(settings_path)

        assert _run(settings_path, "disconnect") == 0

        assert CredentialStore(store).get() is None
        assert len(LinkStore(store).load()) == 0
        assert PolicyStore(store).status()["disabled_reason"] == "disconnected"
        assert "cleared sync links" in capsys.readouterr().out

    def test_disconnect_keep_links(self, settings_path):
        store = _connect(settings_path)

        _run(settings_path, "disconnect", "--keep-links")

        assert CredentialStore(store).get() is None
        assert len(LinkStore(store).load()) == 1


class TestRefresh:
    def _engine(self, refresher):
        credentials = MagicMock()
        credentials.require.return_value = CredentialBundle(
            access_token="a", refresh_token="r", expires_at=EXPIRES
        )
        return {"refresher": refresher, "credentials": credentials}

    def test_forced_refresh(self, settings_path, capsys):
        refresher = MagicMock()
        refresher.refresh = AsyncMock(
            return_value=CredentialBundle(
                access_token="b", refresh_token="r", expires_at=EXPIRES
            )
        )
        with (
            patch(
                "aerotodo_sync.cli.load_settings",
                return_value=(MagicMock(), MagicMock()),
            ) as mock_load,
            patch(
                "aerotodo_sync.cli.build_engine",
                return_value=self._engine(refresher),
            ),
        ):
            code = _run(settings_path, "refresh", "--calendar", "work")

        assert code == 0
        refresher.refresh.assert_awaited_once()
        overrides = mock_load.call_args[0][0]
        assert overrides["calendar_id"] == "work"
        assert overrides["settings_file"] == str(settings_path)
        assert "valid until" in capsys.readouterr().out

    def test_revoked_refresh_fails(self, settings_path, capsys):
        refresher = MagicMock()
        refresher.ensure_valid = AsyncMock(
            side_effect=AuthRevokedError("invalid_grant")
        )
        with (
            patch(
                "aerotodo_sync.cli.load_settings",
                return_value=(MagicMock(), MagicMock()),
            ),
            patch(
                "aerotodo_sync.cli.build_engine",
                return_value=self._engine(refresher),
            ),
        ):
            code = _run(settings_path, "refresh", "--if-needed")

        assert code == 1
        assert "invalid_grant" in capsys.readouterr().err

    def test_missing_config_reported(self, settings_path, capsys):
        with patch(
            "aerotodo_sync.cli.load_settings",
            side_effect=RuntimeError("Configuration error: no client id"),
        ):
            code = _run(settings_path, "refresh")

        assert code == 1
        assert "no client id" in capsys.readouterr().err


@pytest.fixture
def tasks_path(tmp_path):
    path = tmp_path / "tasks.json"
    JsonTaskStore(JsonSettingsStore(path)).add_task(
        TaskDraft(title="Dentist", date=JUNE_1)
    )
    return path


@pytest.fixture
def engine(calendar, credentials, token_endpoint, settings, clock):
    refresher = TokenRefresher(credentials, token_endpoint, clock=clock)
    reconciler = Reconciler(calendar, refresher, LinkStore(settings), clock=clock)
    scheduler = SyncScheduler(
        reconciler, credentials, PolicyStore(settings), interval=3600
    )
    with (
        patch(
            "aerotodo_sync.cli.load_settings",
            return_value=(MagicMock(), MagicMock()),
        ),
        patch(
            "aerotodo_sync.cli.build_engine",
            return_value={"scheduler": scheduler},
        ),
    ):
        yield scheduler


class TestSync:
    def test_sync_pushes_tasks_and_prints_report(
        self, settings_path, tasks_path, engine, calendar, capsys
    ):
        code = _run(settings_path, "sync", "--tasks", str(tasks_path))

        assert code == 0
        assert len(calendar.events) == 1
        out = capsys.readouterr().out
        assert "Sync report for calendar 'primary'" in out
        assert "Dentist" in out

    def test_dry_run_previews_without_writing(
        self, settings_path, tasks_path, engine, calendar, capsys
    ):
        code = _run(settings_path, "sync", "--tasks", str(tasks_path), "--dry-run")

        assert code == 0
        assert calendar.events == {}
        assert "DRY RUN -- No changes will be made" in capsys.readouterr().out
        assert engine.policy_store.status()["last_sync_at"] is None

    def test_json_output(self, settings_path, tasks_path, engine, capsys):
        _run(settings_path, "sync", "--tasks", str(tasks_path), "--json")

        data = json.loads(capsys.readouterr().out)
        assert data["counts"]["created_remote"] == 1
        assert data["dry_run"] is False

    def test_skipped_cycle_fails(self, settings_path, tasks_path, engine, capsys):
        engine.policy_store.save(SyncPolicy(enabled=False))

        code = _run(settings_path, "sync", "--tasks", str(tasks_path))

        assert code == 1
        assert "Cycle skipped: sync disabled" in capsys.readouterr().out

    def test_calendar_override_passed(self, settings_path, tasks_path, engine):
        _run(settings_path, "sync", "--tasks", str(tasks_path), "--calendar", "work")

        assert cli.load_settings.call_args[0][0]["calendar_id"] == "work"


class TestRunCommand:
    def test_runs_scheduler_until_stopped(self, settings_path, tasks_path):
        scheduler = MagicMock()
        scheduler.join = AsyncMock()

        @asynccontextmanager
        async def fake_lifespan(overrides):
            yield {"scheduler": scheduler}

        with patch("aerotodo_sync.cli.sync_lifespan", fake_lifespan):
            code = _run(settings_path, "run", "--tasks", str(tasks_path))

        assert code == 0
        (store,) = scheduler.start_with_store.call_args[0]
        assert isinstance(store, JsonTaskStore)
        assert [t.title for t in store.get_tasks()] == ["Dentist"]
        scheduler.join.assert_awaited_once()


class TestLoggingSetup:
    def _status(self, settings_path, *flags):
        main([*flags, "--settings", str(settings_path), "status"])

    def test_cli_mode_by_default(self, settings_path):
        self._status(settings_path, "--log-format", "json")

        kwargs = cli.setup_logging.call_args[1]
        assert kwargs["mode"] == "cli"
        assert kwargs["log_format"] == "json"

    def test_run_uses_daemon_mode(self, settings_path, tasks_path):
        with patch("aerotodo_sync.cli.cmd_run", return_value=0):
            main(["--settings", str(settings_path), "run", "--tasks", str(tasks_path)])

        assert cli.setup_logging.call_args[1]["mode"] == "daemon"

    def test_yaml_logging_section_used(self, settings_path):
        cli.load_hierarchical_config.return_value = {
            "logging": {"level": "WARNING", "file": "/tmp/aerotodo.log"}
        }

        self._status(settings_path)

        kwargs = cli.setup_logging.call_args[1]
        assert kwargs["level"] == "WARNING"
        assert kwargs["log_file"] == "/tmp/aerotodo.log"

    def test_log_file_flag_beats_yaml(self, settings_path):
        cli.load_hierarchical_config.return_value = {
            "logging": {"file": "/tmp/aerotodo.log"}
        }

        self._status(settings_path, "--log-file", "/tmp/flag.log")

        assert cli.setup_logging.call_args[1]["log_file"] == "/tmp/flag.log"
