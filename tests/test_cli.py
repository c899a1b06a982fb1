"""Tests for the pivot CLI, run through click's CliRunner with an in-memory remote."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner, Result

from pivot import __version__
from pivot.cli import cli
from pivot.core import PivotDB
from pivot.errors import CredentialError, TransportError
from pivot.sync_state import SyncState
from tests._factories import FakeRemoteSource, make_legacy_db, remote_issue

Runner = Callable[..., Result]


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def config_file(tmp_path: Path, data_dir: Path) -> Path:
    """Two projects in two stores: widgets in the global db, gadgets in its own."""
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "global": {"database": str(data_dir / "pivot.db"), "token": "global-token"},
                "projects": [
                    {"owner": "octo", "repo": "widgets", "path": "/src/widgets"},
                    {"owner": "octo", "repo": "gadgets", "path": "/src/gadgets", "token": "gadget-token", "database": str(data_dir / "gadgets.db")},
                ],
            }
        )
    )
    return path


@pytest.fixture
def seeded(source: FakeRemoteSource) -> FakeRemoteSource:
    source.issues["octo/widgets"] = [remote_issue(1001, 1, "First"), remote_issue(1002, 2, "Second")]
    source.issues["octo/gadgets"] = [remote_issue(2001, 1, "Gadget")]
    return source


@pytest.fixture
def run(cli_runner: CliRunner, config_file: Path, source: FakeRemoteSource) -> Runner:
    def _run(*args: str) -> Result:
        return cli_runner.invoke(cli, ["--config", str(config_file), *args], obj={"source": source})

    return _run


def _widgets_db(data_dir: Path) -> PivotDB:
    db = PivotDB(data_dir / "pivot.db")
    db.initialize()
    return db


class TestInit:
    def test_writes_config_and_registers_project(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        target = tmp_path / "config.yml"
        db_path = tmp_path / "db" / "pivot.db"
        result = cli_runner.invoke(
            cli, ["--config", str(target), "init", "--owner", "octo", "--repo", "widgets", "--token", "t", "--database", str(db_path)]
        )
        assert result.exit_code == 0, result.output
        assert "Project:  octo/widgets" in result.output
        data = yaml.safe_load(target.read_text())
        assert data["global"] == {"database": str(db_path), "token": "t"}
        assert data["projects"][0]["owner"] == "octo"
        with PivotDB(db_path) as db:
            assert db.find_project("octo", "widgets").id > 0

    def test_refuses_to_overwrite(self, cli_runner: CliRunner, config_file: Path) -> None:
        result = cli_runner.invoke(cli, ["--config", str(config_file), "init", "--owner", "a", "--repo", "b"])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_force_overwrites(self, cli_runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        result = cli_runner.invoke(
            cli,
            ["--config", str(config_file), "init", "--owner", "a", "--repo", "b", "--database", str(tmp_path / "x.db"), "--force"],
        )
        assert result.exit_code == 0, result.output
        assert [p["repo"] for p in yaml.safe_load(config_file.read_text())["projects"]] == ["b"]

    def test_warns_without_token(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(
            cli, ["--config", str(tmp_path / "c.yml"), "init", "--owner", "a", "--repo", "b", "--database", str(tmp_path / "x.db")]
        )
        assert "No token set" in result.output

    def test_detects_from_git(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        checkout = tmp_path / "checkout"
        (checkout / ".git").mkdir(parents=True)
        (checkout / ".git" / "config").write_text('[remote "origin"]\n\turl = https://github.com/octo/widgets.git\n')
        result = cli_runner.invoke(
            cli,
            ["--config", str(tmp_path / "c.yml"), "init", "--detect", "--path", str(checkout), "--database", str(tmp_path / "x.db")],
        )
        assert result.exit_code == 0, result.output
        assert "octo/widgets" in result.output

    def test_detect_failure(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        empty = tmp_path / "empty"
        empty.mkdir()
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "c.yml"), "init", "--detect", "--path", str(empty)])
        assert result.exit_code == 1
        assert "Pass --owner and --repo explicitly" in result.output


class TestSync:
    def test_syncs_each_store(self, run: Runner, seeded: FakeRemoteSource, data_dir: Path) -> None:
        result = run("sync")
        assert result.exit_code == 0, result.output
        assert "octo/widgets: 2 fetched (2 inserted)" in result.output
        assert "octo/gadgets: 1 fetched (1 inserted)" in result.output
        assert (data_dir / "pivot.db").exists()
        assert (data_dir / "gadgets.db").exists()
        assert seeded.tokens == ["global-token", "gadget-token"]

    def test_json(self, run: Runner, seeded: FakeRemoteSource) -> None:
        result = run("sync", "--json")
        data = json.loads(result.output)
        assert data["ok"] is True
        assert data["totals"]["inserted"] == 3

    def test_project_filter(self, run: Runner, seeded: FakeRemoteSource) -> None:
        result = run("sync", "--project", "octo/gadgets")
        assert result.exit_code == 0
        assert "octo/widgets" not in result.output

    def test_unknown_project(self, run: Runner) -> None:
        result = run("sync", "--project", "octo/nope")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_failed_project_exits_nonzero(self, run: Runner, seeded: FakeRemoteSource) -> None:
        seeded.credential_errors["octo/gadgets"] = CredentialError(401, "Invalid GitHub token", "renew it")
        result = run("sync")
        assert result.exit_code == 1
        assert "octo/widgets: 2 fetched" in result.output
        assert "octo/gadgets: FAILED" in result.output

    def test_writes_log_beside_database(self, run: Runner, seeded: FakeRemoteSource, data_dir: Path) -> None:
        run("sync")
        assert (data_dir / "pivot.log").exists()

    def test_missing_config(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "nope.yml"), "sync"])
        assert result.exit_code == 1
        assert "failed to read config file" in result.output


class TestPush:
    def test_nothing_to_push(self, run: Runner) -> None:
        result = run("push")
        assert result.exit_code == 0
        assert "Nothing to push." in result.output

    def test_pushes_queued_issue(self, run: Runner, source: FakeRemoteSource) -> None:
        run("create", "New bug", "--queue")
        result = run("push")
        assert result.exit_code == 0, result.output
        assert "Pushed #1 -> octo/widgets#501: New bug" in result.output
        assert [p.title for _, p in source.created] == ["New bug"]

    def test_dry_run(self, run: Runner, source: FakeRemoteSource) -> None:
        run("create", "New bug", "--queue")
        result = run("push", "--dry-run")
        assert "Would create #1 in octo/widgets: New bug" in result.output
        assert source.created == []

    def test_failure_exits_nonzero(self, run: Runner, source: FakeRemoteSource) -> None:
        run("create", "New bug", "--queue")
        source.errors["create_issue"] = TransportError("timed out")
        result = run("push")
        assert result.exit_code == 1
        assert "Failed #1 (PUSH_FAILED): timed out" in result.output

    def test_json(self, run: Runner) -> None:
        run("create", "New bug", "--queue")
        data = json.loads(run("push", "--json").output)
        assert data["pushed"][0]["number"] == 501


class TestStatusAndRetry:
    def test_status(self, run: Runner, seeded: FakeRemoteSource) -> None:
        run("sync")
        result = run("status")
        assert result.exit_code == 0
        assert "Issues: 3" in result.output
        assert "SYNCED" in result.output
        assert "octo/widgets" in result.output

    def test_status_json(self, run: Runner, seeded: FakeRemoteSource) -> None:
        run("sync")
        data = json.loads(run("status", "--json").output)
        assert data["total"] == 3
        assert data["projects"] == {"octo/widgets": 2, "octo/gadgets": 1}

    def test_verbose_shows_failures(self, run: Runner, source: FakeRemoteSource) -> None:
        run("create", "Flaky", "--queue")
        source.errors["create_issue"] = TransportError("timed out")
        run("push")
        result = run("status", "-v")
        assert "Needs attention:" in result.output
        assert "#1 [PUSH_FAILED] octo/widgets: Flaky" in result.output
        assert "timed out (retries: 1)" in result.output

    def test_retry(self, run: Runner, source: FakeRemoteSource, data_dir: Path) -> None:
        run("create", "Flaky", "--queue")
        source.errors["create_issue"] = TransportError("timed out")
        run("push")
        result = run("retry")
        assert result.exit_code == 0
        assert "Requeued 1, gave up on 0" in result.output
        with _widgets_db(data_dir) as db:
            assert db.get_sync_state(1).state is SyncState.PENDING_PUSH

    def test_retry_gives_up(self, run: Runner, source: FakeRemoteSource) -> None:
        run("create", "Flaky", "--queue")
        source.errors["create_issue"] = TransportError("timed out")
        run("push")
        result = run("retry", "--max-retries", "1", "--json")
        assert json.loads(result.output) == {"requeued": [], "exhausted": [1]}


class TestLocalWorkflow:
    def test_create(self, run: Runner, data_dir: Path) -> None:
        result = run("create", "New bug", "--body", "steps", "-l", "bug", "-l", "ui")
        assert result.exit_code == 0, result.output
        assert "Created #1 in octo/widgets [LOCAL_ONLY]: New bug" in result.output
        with _widgets_db(data_dir) as db:
            assert db.get_issue(1).labels == ["bug", "ui"]

    def test_create_json_and_queue(self, run: Runner) -> None:
        data = json.loads(run("create", "New bug", "--queue", "--json").output)
        assert data["sync_state"] == "PENDING_PUSH"
        assert data["title"] == "New bug"

    def test_create_in_other_store(self, run: Runner, data_dir: Path) -> None:
        run("create", "Gizmo", "--project", "octo/gadgets")
        with PivotDB(data_dir / "gadgets.db") as db:
            assert db.get_issue(1).title == "Gizmo"

    def test_create_empty_title(self, run: Runner) -> None:
        result = run("create", "  ")
        assert result.exit_code == 1
        assert "Title cannot be empty" in result.output

    def test_edit(self, run: Runner, seeded: FakeRemoteSource) -> None:
        run("sync")
        result = run("edit", "1", "--title", "First (edited)")
        assert result.exit_code == 0, result.output
        assert "Edited #1 [LOCAL_MODIFIED]: First (edited)" in result.output

    def test_edit_clears_labels_and_assignees(self, run: Runner, data_dir: Path) -> None:
        run("create", "New bug", "-l", "bug", "-a", "alice")
        result = run("edit", "1", "--clear-labels", "--clear-assignees")
        assert result.exit_code == 0, result.output
        with _widgets_db(data_dir) as db:
            issue = db.get_issue(1)
            assert (issue.labels, issue.assignees) == ([], [])

    def test_edit_label_conflicts_with_clear(self, run: Runner) -> None:
        result = run("edit", "1", "-l", "bug", "--clear-labels")
        assert result.exit_code == 1
        assert "mutually exclusive" in result.output

    def test_edit_requires_a_change(self, run: Runner) -> None:
        result = run("edit", "1")
        assert result.exit_code == 1
        assert "Nothing to change" in result.output

    def test_edit_unknown_issue(self, run: Runner) -> None:
        result = run("edit", "99", "--title", "x")
        assert result.exit_code == 1
        assert "Not found: 99" in result.output

    def test_queue_picks_event_from_state(self, run: Runner, seeded: FakeRemoteSource) -> None:
        run("sync")
        run("edit", "1", "--body", "more")
        assert "Queued #1 [PENDING_SYNC]" in run("queue", "1").output
        run("create", "Local")
        assert "Queued #3 [PENDING_PUSH]" in run("queue", "3").output

    def test_queue_synced_issue_is_rejected(self, run: Runner, seeded: FakeRemoteSource) -> None:
        run("sync")
        result = run("queue", "1")
        assert result.exit_code == 1
        assert "not valid in state 'SYNCED'" in result.output

    def test_resolve(self, run: Runner, seeded: FakeRemoteSource) -> None:
        run("sync")
        run("edit", "1", "--body", "local body")
        seeded.issues["octo/widgets"][0].title = "Renamed upstream"
        run("sync")
        result = run("resolve", "1", "--use", "remote")
        assert result.exit_code == 0, result.output
        assert "Resolved #1 [SYNCED]: Renamed upstream" in result.output

    def test_resolve_merge(self, run: Runner, seeded: FakeRemoteSource) -> None:
        run("sync")
        run("edit", "1", "--body", "local body")
        seeded.issues["octo/widgets"][0].title = "Renamed upstream"
        run("sync")
        result = run("resolve", "1", "--use", "merge", "--title", "Renamed upstream", "--body", "local body")
        assert "Resolved #1 [PENDING_SYNC]: Renamed upstream" in result.output

    def test_resolve_not_conflicted(self, run: Runner, seeded: FakeRemoteSource) -> None:
        run("sync")
        result = run("resolve", "1", "--use", "local")
        assert result.exit_code == 1
        assert "not conflicted" in result.output

    def test_discard(self, run: Runner, seeded: FakeRemoteSource, data_dir: Path) -> None:
        run("sync")
        run("edit", "1", "--title", "Local")
        result = run("discard", "1")
        assert result.exit_code == 0, result.output
        assert "Discarded local changes to #1" in result.output
        with _widgets_db(data_dir) as db:
            assert db.get_issue(1).title == "First"


class TestConfigCommands:
    def test_show_masks_tokens(self, run: Runner) -> None:
        data = json.loads(run("config", "show", "--json").output)
        assert data["global"]["token"] == "***"
        assert data["projects"][1]["token"] == "***"
        assert data["legacy"] is False

    def test_show_text(self, run: Runner) -> None:
        result = run("config", "show")
        assert "Format:   multi-project" in result.output
        assert "octo/gadgets  /src/gadgets (overrides: token, database)" in result.output
        assert "global-token" not in result.output

    def test_import_merge(self, run: Runner, tmp_path: Path, config_file: Path) -> None:
        team = tmp_path / "team.yml"
        team.write_text("projects:\n  - owner: acme\n    repo: rockets\n    path: /src/rockets\n")
        result = run("config", "import", str(team), "--merge")
        assert result.exit_code == 0, result.output
        names = [f"{p['owner']}/{p['repo']}" for p in yaml.safe_load(config_file.read_text())["projects"]]
        assert names == ["octo/widgets", "octo/gadgets", "acme/rockets"]

    def test_import_replace(self, run: Runner, tmp_path: Path, config_file: Path) -> None:
        team = tmp_path / "team.yml"
        team.write_text("projects:\n  - owner: acme\n    repo: rockets\n    path: /src/rockets\n")
        assert "Imported 1 project(s)" in run("config", "import", str(team)).output
        assert len(yaml.safe_load(config_file.read_text())["projects"]) == 1

    def test_add_project(self, run: Runner, config_file: Path) -> None:
        result = run("config", "add-project", "--owner", "acme", "--repo", "rockets", "--path", "/src/rockets")
        assert result.exit_code == 0, result.output
        assert "Added acme/rockets" in result.output
        assert yaml.safe_load(config_file.read_text())["projects"][-1]["repo"] == "rockets"

    def test_add_duplicate_project(self, run: Runner) -> None:
        result = run("config", "add-project", "--owner", "octo", "--repo", "widgets")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_add_project_needs_owner_and_repo(self, run: Runner) -> None:
        assert run("config", "add-project", "--owner", "acme").exit_code == 1


class TestMigrateLegacy:
    def test_adopts_legacy_store(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = make_legacy_db(tmp_path / "legacy.db", [(1001, 1, "Legacy Issue", "", "open", "", "")])
        result = cli_runner.invoke(
            cli, ["migrate-legacy", "--owner", "legacyowner", "--repo", "legacyrepo", "--path", "/legacy/path", "--database", str(path)]
        )
        assert result.exit_code == 0, result.output
        assert "Migrated 1 legacy issue(s) into legacyowner/legacyrepo" in result.output
        with PivotDB(path) as db:
            project = db.find_project("legacyowner", "legacyrepo")
            assert db.get_issue_by_remote(project.id, 1001).title == "Legacy Issue"


def test_version(cli_runner: CliRunner) -> None:
    result = cli_runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
