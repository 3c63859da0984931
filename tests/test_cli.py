"""
Tests for CLI module.
"""

import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from flarum_to_discourse_migrator.batches import BatchResult
from flarum_to_discourse_migrator.cli import build_migrator, build_settings, main, parse_arguments, print_report
from flarum_to_discourse_migrator.config import Settings
from flarum_to_discourse_migrator.exceptions import StoreConnectionError
from flarum_to_discourse_migrator.orchestrator import MigrationResult, MigrationStats
from flarum_to_discourse_migrator.utils import setup_logging


@pytest.fixture
def forum_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DISCOURSE_URL", "https://forum.example.com")
    monkeypatch.setenv("DISCOURSE_API_KEY", "api-key")
    monkeypatch.setenv("FLARUM_PW", "db-password")
    for name in ("TABLE_PREFIX", "BATCH_SIZE", "FLARUM_UPLOADS_DIR", "DISCOURSE_DB_DSN"):
        monkeypatch.delenv(name, raising=False)


def result_with(*, success: bool, failures: list[str] | None = None) -> MigrationResult:
    stats = MigrationStats()
    stats.phases["import_users"] = BatchResult(total=3, processed=3, created=2, failed=len(failures or []))
    stats.phases["import_users"].failures = list(failures or [])
    return MigrationResult(success=success, stats=stats)


@pytest.mark.unit
class TestParseArguments:
    def test_defaults(self) -> None:
        args = parse_arguments([])

        assert args.only is None
        assert args.verbose is False
        assert args.batch_size is None

    def test_only_repeatable(self) -> None:
        args = parse_arguments(["--only", "import_users", "--only", "import_likes", "-v"])

        assert args.only == ["import_users", "import_likes"]
        assert args.verbose is True

    def test_unknown_phase_rejected(self) -> None:
        with pytest.raises(SystemExit):
            parse_arguments(["--only", "import_everything"])


@pytest.mark.unit
class TestBuildSettings:
    def test_environment_used(self, forum_env: None) -> None:
        settings = build_settings(parse_arguments([]))

        assert settings.discourse_url == "https://forum.example.com"
        assert settings.discourse_api_key == "api-key"
        assert settings.flarum_password == "db-password"
        assert settings.batch_size == 5000

    def test_flags_override_environment(self, forum_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TABLE_PREFIX", "env_")

        settings = build_settings(
            parse_arguments(
                [
                    "--discourse-url",
                    "https://other.example.com/",
                    "--table-prefix",
                    "fl_",
                    "--batch-size",
                    "100",
                    "--uploads-dir",
                    "/srv/avatars",
                ]
            )
        )

        assert settings.discourse_url == "https://other.example.com"
        assert settings.table_prefix == "fl_"
        assert settings.batch_size == 100
        assert settings.uploads_dir == Path("/srv/avatars")

    def test_batch_size_must_be_positive(self, forum_env: None) -> None:
        with pytest.raises(ValueError, match="positive"):
            build_settings(parse_arguments(["--batch-size", "0"]))

    def test_pass_paths_forwarded(self) -> None:
        with patch("flarum_to_discourse_migrator.cli.Settings.from_env", return_value=Settings()) as mock_from_env:
            build_settings(parse_arguments(["--flarum-pass-password", "db/pw", "--discourse-pass-key", "api/key"]))

        mock_from_env.assert_called_once_with(flarum_pass_path="db/pw", discourse_pass_path="api/key")


@pytest.mark.unit
class TestBuildMigrator:
    def setup_method(self) -> None:
        self.settings = Settings(discourse_url="https://forum.example.com", discourse_api_key="key", batch_size=10)

    @patch("flarum_to_discourse_migrator.cli.DiscourseTarget.from_settings")
    @patch("flarum_to_discourse_migrator.cli.flarum_source.get_connection")
    def test_in_memory_store_without_dsn(
        self, mock_mysql: MagicMock, mock_target: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING), patch("flarum_to_discourse_migrator.cli.InMemoryMappingStore") as store:
            build_migrator(self.settings)

        store.assert_called_once_with()
        mock_mysql.assert_called_once_with(self.settings)
        mock_target.assert_called_once_with(self.settings)
        assert "DISCOURSE_DB_DSN is not set" in caplog.text

    @patch("flarum_to_discourse_migrator.cli.DiscourseTarget.from_settings")
    @patch("flarum_to_discourse_migrator.cli.flarum_source.get_connection")
    def test_discourse_store_with_dsn(self, mock_mysql: MagicMock, mock_target: MagicMock) -> None:
        settings = Settings(discourse_url="https://forum.example.com", discourse_api_key="key", discourse_db_dsn="dbname=d")

        with (
            patch("flarum_to_discourse_migrator.cli.discourse_mapping.get_connection") as mock_pg,
            patch("flarum_to_discourse_migrator.cli.DiscourseMappingStore") as store,
        ):
            build_migrator(settings)

        mock_pg.assert_called_once_with("dbname=d")
        store.assert_called_once_with(mock_pg.return_value)


@pytest.mark.unit
class TestMain:
    def run_main(self, argv: list[str], result: MigrationResult | Exception) -> MagicMock:
        migrator = MagicMock()
        if isinstance(result, Exception):
            migrator.migrate.side_effect = result
        else:
            migrator.migrate.return_value = result
        with (
            patch("flarum_to_discourse_migrator.cli.setup_logging"),
            patch("flarum_to_discourse_migrator.cli.build_settings", return_value=Settings()),
            patch("flarum_to_discourse_migrator.cli.build_migrator", return_value=migrator),
        ):
            main(argv)
        return migrator

    def test_success_exits_zero(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            self.run_main([], result_with(success=True))

        assert exc_info.value.code == 0
        assert "Migration succeeded" in capsys.readouterr().out

    def test_failed_records_exit_one(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            self.run_main([], result_with(success=False, failures=["users: user 7 (x): HTTP 422"]))

        assert exc_info.value.code == 1
        out = capsys.readouterr().out
        assert "user 7 (x): HTTP 422" in out
        assert "finished with errors" in out

    def test_phases_forwarded(self) -> None:
        migrator = MagicMock()
        migrator.migrate.return_value = result_with(success=True)
        with (
            patch("flarum_to_discourse_migrator.cli.setup_logging"),
            patch("flarum_to_discourse_migrator.cli.build_settings", return_value=Settings()),
            patch("flarum_to_discourse_migrator.cli.build_migrator", return_value=migrator),
            pytest.raises(SystemExit),
        ):
            main(["--only", "import_likes"])

        migrator.migrate.assert_called_once_with(["import_likes"])

    def test_connection_loss_exits_one(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.ERROR), pytest.raises(SystemExit) as exc_info:
            self.run_main([], StoreConnectionError("Cannot connect to Flarum database"))

        assert exc_info.value.code == 1
        assert "Migration failed" in caplog.text


@pytest.mark.unit
class TestPrintReport:
    def test_phase_lines(self, capsys: pytest.CaptureFixture[str]) -> None:
        result = result_with(success=True)
        result.stats.errors.append("import_likes: Unknown site setting: max_likes_per_day")

        print_report(result)

        out = capsys.readouterr().out
        assert "import_users: 2 created, 0 already migrated, 0 skipped, 0 failed (of 3)" in out
        assert "phase error: import_likes: Unknown site setting" in out


@pytest.mark.unit
class TestSetupLogging:
    """Test setup_logging levels and handlers."""

    def run_setup(self, tmp_path: Path, *, verbose: bool) -> logging.Logger:
        setup_logging(verbose=verbose, log_file=str(tmp_path / "migration.log"))
        return logging.getLogger()

    @pytest.mark.parametrize(("verbose", "level"), [(False, logging.INFO), (True, logging.DEBUG)])
    def test_levels(self, tmp_path: Path, verbose: bool, level: int) -> None:
        root_logger = logging.getLogger()
        original_handlers = root_logger.handlers[:]
        original_level = root_logger.level
        root_logger.handlers.clear()

        try:
            self.run_setup(tmp_path, verbose=verbose)
            assert root_logger.level == level
            assert any(isinstance(h, logging.FileHandler) for h in root_logger.handlers)
            assert logging.getLogger("urllib3").level == logging.WARNING
        finally:
            for h in root_logger.handlers:
                h.close()
            root_logger.handlers = original_handlers
            root_logger.setLevel(original_level)
