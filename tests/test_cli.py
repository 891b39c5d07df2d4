"""Test the command-line interface"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from conftest import FakeRemoteClient, artist, song
from tunesync import __version__
from tunesync.cli import cli
from tunesync.core.database import Database


@pytest.fixture
def store(temp_dir):
    return temp_dir / "store"


@pytest.fixture
def config_path(temp_dir, store):
    path = temp_dir / "config.yaml"
    path.write_text(f'storage:\n  directory: "{store}"\nsync:\n  page_size: 2\n', encoding="utf-8")
    return path


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, config_path, *args):
    return runner.invoke(cli, ["--config", str(config_path), *args])


def open_database(store):
    store.mkdir(parents=True, exist_ok=True)
    return Database(store / "tunesync.db")


class TestCli:
    """Test commands and exit codes"""

    def test_version(self, runner):
        """Test --version prints the version"""
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_without_command(self, runner):
        """Test running without a command shows help"""
        result = runner.invoke(cli, [])

        assert result.exit_code == 0
        assert "sync" in result.output

    def test_missing_config(self, runner, temp_dir):
        """Test a missing config file exits with 1"""
        result = invoke(runner, temp_dir / "nope.yaml", "stats")

        assert result.exit_code == 1

    def test_add_source(self, runner, config_path, store):
        """Test add-source registers the source"""
        result = invoke(runner, config_path, "add-source", "10.0.0.5", "8080", "--name", "Den")

        assert result.exit_code == 0
        database = open_database(store)
        assert [(s.host, s.port, s.name) for s in database.get_sources()] == [("10.0.0.5", 8080, "Den")]
        database.close()

    def test_duplicate_source_is_database_error(self, runner, config_path):
        """Test registering the same source twice exits with 2"""
        invoke(runner, config_path, "add-source", "10.0.0.5", "8080")

        result = invoke(runner, config_path, "add-source", "10.0.0.5", "8080")

        assert result.exit_code == 2

    def test_configured_sources_registered(self, runner, temp_dir, store):
        """Test sources listed in config.yaml are added on startup"""
        path = temp_dir / "config.yaml"
        path.write_text(
            f'storage:\n  directory: "{store}"\n'
            'sources:\n  - host: "nas.local"\n    port: 5545\n',
            encoding="utf-8"
        )

        result = invoke(runner, path, "sources")

        assert result.exit_code == 0
        database = open_database(store)
        assert [s.address for s in database.get_sources()] == ["nas.local:5545"]
        database.close()

    def test_remove_unknown_source(self, runner, config_path):
        """Test removing an unknown id is a usage error"""
        result = invoke(runner, config_path, "remove-source", "42")

        assert result.exit_code != 0

    def test_maintenance_commands(self, runner, config_path):
        """Test stats, adjust-counts and purge-tombstones run on an empty library"""
        assert invoke(runner, config_path, "stats").exit_code == 0
        assert invoke(runner, config_path, "adjust-counts").exit_code == 0
        assert invoke(runner, config_path, "purge-tombstones", "--older-than", "30").exit_code == 0

    def test_sync(self, runner, config_path, store):
        """Test sync pulls the remote library and exits with 0"""
        database = open_database(store)
        source = database.add_source("10.0.0.5", 8080)
        database.close()
        remote = FakeRemoteClient()
        remote.serve_library(source, artists=[artist(1, "Abba")], songs=[song(1, 1, "One")])

        with patch("tunesync.cli.HttpRemoteClient", return_value=remote):
            result = invoke(runner, config_path, "sync", "--no-progress")

        assert result.exit_code == 0
        database = open_database(store)
        assert database.get_stats()["songs"] == 1
        database.close()

    def test_failed_sync_exit_code(self, runner, config_path, store):
        """Test a source failing to apply exits with 4"""
        database = open_database(store)
        source = database.add_source("10.0.0.5", 8080)
        database.close()
        remote = FakeRemoteClient()
        remote.serve_library(source, songs=[song(1, 99, "Orphan")])

        with patch("tunesync.cli.HttpRemoteClient", return_value=remote):
            result = invoke(runner, config_path, "sync", "--no-progress")

        assert result.exit_code == 4

    def test_sync_unknown_source(self, runner, config_path):
        """Test syncing an unregistered id exits with 4"""
        result = invoke(runner, config_path, "sync", "--source", "7", "--no-progress")

        assert result.exit_code == 4
