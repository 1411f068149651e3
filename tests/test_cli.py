"""Tests for the pgembed command line."""
from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from conftest import FAKE_VERSION
from packaging.version import Version
from typer.testing import CliRunner

from pgembed import __version__
from pgembed import supervisor as supervisor_module
from pgembed.archive import ArchiveKey
from pgembed.cli import app
from pgembed.exit_codes import ExitCode

runner = CliRunner()


def _prepare_environment(
    tmp_path: Path,
    fake_archive: bytes,
    **extra: str,
) -> dict[str, str]:
    """Write the archive where the CLI expects it and return the environment."""
    archive = tmp_path / ArchiveKey.for_host(Version(FAKE_VERSION)).asset_name
    archive.write_bytes(fake_archive)
    env = {
        "PGEMBED_CONFIG_FILE": str(tmp_path / "config.yml"),
        "PGEMBED_PATHS__CACHE_DIR": str(tmp_path / "cache"),
        "PGEMBED_PATHS__LOG_DIR": str(tmp_path / "logs"),
        "PGEMBED_DOWNLOAD__ARCHIVE_PATH": str(archive),
        "PGEMBED_SERVER__PASSWORD": "pw",
        "PGEMBED_TIMEOUTS__START": "15",
        "PGEMBED_TIMEOUTS__READINESS_INTERVAL": "0.05",
    }
    env.update(extra)
    return env


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_option_outputs_package_version(tmp_path: Path, fake_archive: bytes) -> None:
    """CLI ``--version`` flag emits the package version."""
    env = _prepare_environment(tmp_path, fake_archive)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path, fake_archive: bytes) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env = _prepare_environment(tmp_path, fake_archive)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Provision and run local PostgreSQL servers" in result.stdout


def test_config_show_json_redacts_secrets(tmp_path: Path, fake_archive: bytes) -> None:
    """`config show --json` emits the merged settings without secrets."""
    env = _prepare_environment(tmp_path, fake_archive, GITHUB_TOKEN="ghp_very_secret")

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    server = payload["server"]
    paths = payload["paths"]
    assert isinstance(server, dict) and isinstance(paths, dict)
    assert server["password"] == "********"
    assert paths["cache_dir"] == str(tmp_path / "cache")
    assert "ghp_very_secret" not in result.stdout
    assert "pw" not in json.dumps(server)


def test_config_show_renders_table(tmp_path: Path, fake_archive: bytes) -> None:
    """`config show` prints the merged configuration in a table."""
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "releases_url" in result.stdout
    assert "timeouts" in result.stdout


def test_invalid_configuration_exits_with_validation_code(
    tmp_path: Path, fake_archive: bytes
) -> None:
    """Configuration errors map to exit code 2."""
    env = _prepare_environment(tmp_path, fake_archive, PGEMBED_SERVER__AUTH_METHOD="ident")

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unsupported auth method" in result.stdout


def test_versions_json_lists_embedded_version(tmp_path: Path, fake_archive: bytes) -> None:
    """`versions --json` reports the versions the provider offers."""
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["versions", "--json"], env=env)

    assert result.exit_code == 0
    assert _extract_json(result.stdout) == {"versions": [FAKE_VERSION]}


def test_versions_filter_without_match_renders_empty_table(
    tmp_path: Path, fake_archive: bytes
) -> None:
    """Filters that match nothing render an empty table."""
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["versions", "15"], env=env)

    assert result.exit_code == 0
    assert "(none)" in result.stdout


def test_resolve_prints_version(tmp_path: Path, fake_archive: bytes) -> None:
    """`resolve` prints the concrete version and logs the operation."""
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["resolve", "16"], env=env)

    assert result.exit_code == 0
    assert FAKE_VERSION in result.stdout
    last = _operations(tmp_path)[-1]
    assert last["operation"] == "resolve"
    assert last["args"] == {"spec": "16"}


def test_resolve_unmatched_spec_exits_with_provider_code(
    tmp_path: Path, fake_archive: bytes
) -> None:
    """An unsatisfiable spec is a provider failure."""
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["resolve", "15"], env=env)

    assert result.exit_code == ExitCode.PROVIDER
    last = _operations(tmp_path)[-1]
    result_block = last["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "error"
    assert result_block["rc"] == ExitCode.PROVIDER


def test_resolve_malformed_spec_exits_with_validation_code(
    tmp_path: Path, fake_archive: bytes
) -> None:
    """Malformed specifiers are validation errors."""
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["resolve", "^^bad"], env=env)

    assert result.exit_code == ExitCode.VALIDATION


def test_missing_archive_path_is_a_configuration_error(
    tmp_path: Path, fake_archive: bytes
) -> None:
    """A configured archive that cannot be read fails validation."""
    env = _prepare_environment(
        tmp_path,
        fake_archive,
        PGEMBED_DOWNLOAD__ARCHIVE_PATH=str(tmp_path / "postgresql-16.4.0-nowhere.tar.gz"),
    )

    result = runner.invoke(app, ["versions"], env=env)

    assert result.exit_code == ExitCode.VALIDATION


def test_fetch_then_cache_list(tmp_path: Path, fake_archive: bytes) -> None:
    """`fetch` stores the archive; `cache list --json` reports it."""
    env = _prepare_environment(tmp_path, fake_archive)

    fetched = runner.invoke(app, ["fetch", "16"], env=env)
    assert fetched.exit_code == 0
    assert "Cached" in fetched.stdout
    fetch_record = _operations(tmp_path)[-1]
    assert fetch_record["operation"] == "fetch"
    assert isinstance(fetch_record["lock_wait_ms"], int)

    listed = runner.invoke(app, ["cache", "list", "--json"], env=env)
    assert listed.exit_code == 0
    entries = _extract_json(listed.stdout)["entries"]
    assert isinstance(entries, list) and len(entries) == 1
    assert entries[0]["complete"] is True
    assert entries[0]["version"] == FAKE_VERSION
    assert entries[0]["size"] == len(fake_archive)


def test_cache_list_table_when_empty(tmp_path: Path, fake_archive: bytes) -> None:
    """An empty cache renders a placeholder row."""
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["cache", "list"], env=env)

    assert result.exit_code == 0
    assert "(none)" in result.stdout


def test_cache_prune_removes_incomplete_entries(tmp_path: Path, fake_archive: bytes) -> None:
    """`cache prune` evicts debris left by interrupted downloads."""
    env = _prepare_environment(tmp_path, fake_archive)
    assert runner.invoke(app, ["fetch"], env=env).exit_code == 0
    debris = tmp_path / "cache" / "postgresql-15.8.0-debris"
    debris.mkdir(parents=True)

    result = runner.invoke(app, ["cache", "prune"], env=env)

    assert result.exit_code == 0
    assert "Removed 1 cache entries." in result.stdout
    assert not debris.exists()
    last = _operations(tmp_path)[-1]
    assert last["operation"] == "cache prune"


@pytest.mark.skipif(sys.platform == "win32", reason="fake binaries are sh scripts")
def test_run_check_starts_and_stops_server(
    tmp_path: Path, fake_archive: bytes, monkeypatch: pytest.MonkeyPatch
) -> None:
    """`run --check` brings a server up, prints its URL and tears it down."""
    monkeypatch.setattr(
        supervisor_module, "postgres_probe", lambda *args, **kwargs: supervisor_module.tcp_probe
    )
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["run", "--check", "--dir", str(tmp_path / "instance")], env=env)

    assert result.exit_code == 0, result.stdout
    assert f"PostgreSQL {FAKE_VERSION} listening on port" in result.stdout
    assert "postgresql://postgres:pw@localhost:" in result.stdout
    assert (tmp_path / "instance" / "data" / "PG_VERSION").exists()
    run_record = _operations(tmp_path)[-1]
    assert run_record["operation"] == "run"
    result_block = run_record["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "success"


def test_run_rejects_out_of_range_port(tmp_path: Path, fake_archive: bytes) -> None:
    """Typer validates the port range before anything starts."""
    env = _prepare_environment(tmp_path, fake_archive)

    result = runner.invoke(app, ["run", "--port", "70000", "--check"], env=env)

    assert result.exit_code == 2
