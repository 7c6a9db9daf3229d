"""CLI の通しテスト（一時ディレクトリ上のストアを使う）。"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from crowdlore.cli import app
from crowdlore.closing import close_scenario
from crowdlore.store import SqliteStore

runner = CliRunner()

SCENARIO_TOML = """
id = "d-100"
title = "The Flooded Bridge"
scenario = "Spring rain has washed out the only bridge."
theme = "survival"

[[options]]
id = "a"
text = "Rebuild the bridge"
description = "Stone by stone."
[options.effects]
stability = 1

[[options]]
id = "b"
text = "Explore the caves"
description = "Maybe there is another way."
[options.effects]
curiosity = 1

[[options]]
id = "c"
text = "Build a ferry"
description = "Quick but risky."
[options.effects]
survival = 1
reputation = 1
"""


@pytest.fixture()
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "d-100.toml").write_text(SCENARIO_TOML, encoding="utf-8")
    return tmp_path


def test_balance_writes_adjusted_scenario(workdir: Path) -> None:
    r = runner.invoke(app, ["balance", "d-100.toml", "--seed", "1", "--out", "out/d-100.json"])
    assert r.exit_code == 0, r.output
    assert "balance=" in r.output

    data = json.loads((workdir / "out" / "d-100.json").read_text(encoding="utf-8"))
    assert data["id"] == "d-100"
    assert len(data["options"]) == 3


def test_balance_missing_file(workdir: Path) -> None:
    r = runner.invoke(app, ["balance", "nope.toml"])
    assert r.exit_code == 1


def test_full_cycle(workdir: Path) -> None:
    r = runner.invoke(app, ["publish", "d-100.toml", "--skip-balance"])
    assert r.exit_code == 0, r.output
    assert "published: d-100" in r.output

    for user, option in (("u1", "a"), ("u2", "a"), ("u3", "c")):
        r = runner.invoke(app, ["vote", "d-100", option, "--user", user])
        assert r.exit_code == 0, r.output

    r = runner.invoke(app, ["vote", "d-100", "b", "--user", "u1"])
    assert r.exit_code == 1
    assert "already voted" in r.output

    r = runner.invoke(app, ["vote", "d-100", "z", "--user", "u9"])
    assert r.exit_code == 1
    assert "Invalid option" in r.output

    r = runner.invoke(app, ["status"])
    assert "d-100: collecting" in r.output

    r = runner.invoke(app, ["tally", "d-100"])
    assert r.exit_code == 0, r.output
    assert "web_interface: 3" in r.output

    r = runner.invoke(app, ["close", "d-100", "--eligible", "10"])
    assert r.exit_code == 0, r.output
    assert "Rebuild the bridge" in r.output

    r = runner.invoke(app, ["status", "d-100"])
    assert "d-100: completed" in r.output

    r = runner.invoke(app, ["world"])
    assert "stability: +1" in r.output

    # 2回目の close は保存済みの結果を返し、世界は進めない
    r = runner.invoke(app, ["close", "d-100"])
    assert r.exit_code == 0, r.output
    assert "already closed" in r.output
    r = runner.invoke(app, ["world"])
    assert "stability: +1" in r.output


def test_close_without_active_scenario(workdir: Path) -> None:
    r = runner.invoke(app, ["close", "d-100"])
    assert r.exit_code == 1
    assert "No active scenario" in r.output


def test_replayed_close_applies_world_left_behind(workdir: Path) -> None:
    runner.invoke(app, ["publish", "d-100.toml", "--skip-balance"])
    r = runner.invoke(app, ["vote", "d-100", "a", "--user", "u1"])
    assert r.exit_code == 0, r.output

    # 締めは終わったが世界への反映前に止まった状態
    close_scenario(SqliteStore(workdir / ".crowdlore" / "store.db"), "d-100")
    r = runner.invoke(app, ["world"])
    assert "stability: +0" in r.output

    r = runner.invoke(app, ["close", "d-100"])
    assert r.exit_code == 0, r.output
    assert "already closed" in r.output
    r = runner.invoke(app, ["world"])
    assert "stability: +1" in r.output

    r = runner.invoke(app, ["close", "d-100"])
    assert "world already reflects" in r.output
    r = runner.invoke(app, ["world"])
    assert "stability: +1" in r.output
