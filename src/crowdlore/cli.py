"""crowdlore CLI エントリポイント。"""

from __future__ import annotations

import json
import random
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from crowdlore.balance import balance_scenario
from crowdlore.closing import close_scenario, get_processing_status
from crowdlore.config import CrowdLoreConfig, load_config
from crowdlore.errors import CrowdLoreError
from crowdlore.logging_setup import setup_logging
from crowdlore.outcome import OutcomeFanout
from crowdlore.publish import get_active_scenario, publish_scenario
from crowdlore.scenario import load_scenario
from crowdlore.store import SqliteStore
from crowdlore.votes import SOURCE_WEB, VOTE_SOURCES, submit_vote, vote_breakdown
from crowdlore.watch import watch_inbox
from crowdlore.world import apply_close_to_world, load_world

APP_HELP = "⚖️ crowdlore: 3択シナリオのバランス調整と投票集計"

app = typer.Typer(add_completion=False, help=APP_HELP)
console = Console()

CONFIG_OPTION = typer.Option(Path("crowdlore.toml"), "--config", help="設定ファイル")


def _setup(config: Path) -> tuple[CrowdLoreConfig, SqliteStore]:
    cfg = load_config(config)
    setup_logging(root=Path("."), level=cfg.log_level)
    return cfg, SqliteStore(Path(cfg.store_path))


def _fail(message: str) -> None:
    console.print(f"❌ {message}", style="red")
    raise typer.Exit(code=1)


@app.command()
def balance(
    scenario: Path = typer.Argument(..., help="候補シナリオTOMLへのパス"),
    seed: int | None = typer.Option(None, "--seed", help="乱数シード（再現用）"),
    out: Path | None = typer.Option(None, "--out", help="調整後シナリオJSONの出力先"),
    config: Path = CONFIG_OPTION,
) -> None:
    """合成有権者で試投票し、偏りがあれば効果を調整する。"""
    cfg = load_config(config)
    setup_logging(root=Path("."), level=cfg.log_level)
    if not scenario.exists():
        _fail(f"シナリオが見つかりません: {scenario}")

    try:
        s = load_scenario(scenario)
    except CrowdLoreError as e:
        _fail(str(e))
        return

    result = balance_scenario(s, rng=random.Random(seed), settings=cfg.balance)

    table = Table(title=f"{s.id}: {s.title}")
    table.add_column("option")
    table.add_column("text")
    table.add_column("votes", justify="right")
    table.add_column("effects")
    for o in s.options:
        effects = ", ".join(f"{k}={v:+d}" for k, v in o.effects.as_dict(skip_zero=True).items())
        table.add_row(o.id, o.text, str(result.simulation.option_votes.get(o.id, 0)), effects or "-")
    console.print(table)

    for a in result.adjustments:
        console.print(f"  🔧 {a}", style="dim")
    style = "green" if result.accepted else "yellow"
    console.print(
        f"  balance={result.balance_score:.2f} dominance={result.simulation.dominance_percentage}%"
        f" attempts={result.attempts} accepted={result.accepted}",
        style=style,
    )

    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(result.scenario.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
        console.print(f"  調整後シナリオを書き出しました: {out.resolve()}", style="bold green")


@app.command()
def publish(
    scenario: Path = typer.Argument(..., help="候補シナリオTOMLへのパス"),
    seed: int | None = typer.Option(None, "--seed", help="乱数シード（再現用）"),
    skip_balance: bool = typer.Option(False, "--skip-balance", help="バランス調整をせずに公開"),
    config: Path = CONFIG_OPTION,
) -> None:
    """シナリオをバランス調整してアクティブにする。"""
    cfg, store = _setup(config)
    if not scenario.exists():
        _fail(f"シナリオが見つかりません: {scenario}")

    try:
        s = load_scenario(scenario)
        if not skip_balance:
            result = balance_scenario(s, rng=random.Random(seed), settings=cfg.balance)
            s = result.scenario
            console.print(f"  balance={result.balance_score:.2f} accepted={result.accepted}", style="dim")
        publish_scenario(store, s)
    except CrowdLoreError as e:
        _fail(str(e))
        return
    console.print(f"✅ published: {s.id} ({s.title})", style="green")


@app.command()
def vote(
    scenario_id: str = typer.Argument(..., help="シナリオID"),
    option_id: str = typer.Argument(..., help="選択肢ID"),
    user: str = typer.Option(..., "--user", help="ユーザーID"),
    username: str = typer.Option("", "--username", help="表示名（省略時はユーザーID）"),
    source: str = typer.Option(SOURCE_WEB, "--source", help=f"投票経路 ({' | '.join(VOTE_SOURCES)})"),
    config: Path = CONFIG_OPTION,
) -> None:
    """1票を投じる。"""
    _, store = _setup(config)
    try:
        v = submit_vote(store, scenario_id, option_id, user, username or user, source)
    except CrowdLoreError as e:
        _fail(f"投票を記録できませんでした: {e}")
        return
    if not v.is_valid:
        _fail(v.reason or "rejected")
    assert v.vote is not None
    console.print(f"✅ vote recorded: {v.vote.id}", style="green")


@app.command()
def tally(
    scenario_id: str = typer.Argument(..., help="シナリオID"),
    config: Path = CONFIG_OPTION,
) -> None:
    """集計と投票経路の内訳を表示する。"""
    _, store = _setup(config)
    breakdown = vote_breakdown(store, scenario_id)
    if breakdown is None:
        console.print("(no votes)")
        return

    table = Table(title=f"{scenario_id}: {breakdown['total_votes']} votes")
    table.add_column("option")
    table.add_column("votes", justify="right")
    table.add_column("%", justify="right")
    for row in breakdown["options"]:
        table.add_row(row["option_id"], str(row["votes"]), str(row["percentage"]))
    console.print(table)
    for src, n in breakdown["sources"].items():
        console.print(f"- {src}: {n}")


@app.command()
def close(
    scenario_id: str = typer.Argument(..., help="シナリオID"),
    eligible: int | None = typer.Option(None, "--eligible", help="投票資格のあるユーザー数"),
    config: Path = CONFIG_OPTION,
) -> None:
    """投票を締めて勝者を決め、世界の状態に反映する。"""
    cfg, store = _setup(config)
    fanout = OutcomeFanout(
        store,
        workers=cfg.voting.fanout_workers,
        window=cfg.voting.recent_window,
        impact_weight=cfg.voting.impact_weight,
        streak_gap_days=cfg.voting.streak_gap_days,
    )
    try:
        result = close_scenario(
            store,
            scenario_id,
            eligible_users=eligible if eligible is not None else cfg.voting.eligible_users,
            fanout=fanout,
            claim_ttl=cfg.voting.close_claim_ttl,
        )
        # 再生時も呼ぶ。前回ここで落ちていれば今回反映される
        _, applied = apply_close_to_world(
            store, scenario_id, result.effects, lore_entry=result.summary
        )
    except CrowdLoreError as e:
        _fail(str(e))
        return

    if result.replayed:
        console.print("(already closed; showing stored result)", style="yellow")
    if not applied:
        console.print("(world already reflects this scenario)", style="dim")

    console.print(f"🏆 {result.winning_option.text}", style="bold green")
    console.print(f"  {result.summary}")
    console.print(
        f"  votes={result.tally.total_votes} participation={result.participation_rate:.0%}"
        f" users updated={result.users_updated} failed={result.users_failed}",
        style="dim",
    )


@app.command()
def status(
    scenario_id: str = typer.Argument("", help="シナリオID（省略時はアクティブなシナリオ）"),
    config: Path = CONFIG_OPTION,
) -> None:
    """締め処理の状態を表示する。"""
    _, store = _setup(config)
    if not scenario_id:
        active = get_active_scenario(store)
        if active is None:
            console.print("(no active scenario)")
            return
        scenario_id = active.id

    st = get_processing_status(store, scenario_id)
    if st is None:
        console.print("(no status)")
        return
    line = f"- {st.scenario_id}: {st.status}"
    if st.error:
        line += f" ({st.error})"
    console.print(line)


@app.command()
def world(config: Path = CONFIG_OPTION) -> None:
    """世界の属性を表示する。"""
    _, store = _setup(config)
    w = load_world(store)
    for axis, v in w.attributes.items():
        console.print(f"- {axis}: {v:+d}")
    if w.lore_log:
        console.print(f"\n{w.lore_log[-1]}", style="dim")


@app.command()
def watch(
    inbox: Path = typer.Option(Path("scenarios"), "--inbox", help="監視する候補シナリオフォルダ"),
    outbox: Path = typer.Option(Path("balanced"), "--outbox", help="レポート出力フォルダ"),
    processed: Path = typer.Option(Path(".crowdlore/processed.json"), "--processed", help="処理済み記録ファイル"),
    debounce: float = typer.Option(0.25, "--debounce", help="デバウンス秒"),
    seed: int | None = typer.Option(None, "--seed", help="乱数シード（再現用）"),
    config: Path = CONFIG_OPTION,
) -> None:
    """候補シナリオフォルダを監視して自動でバランス調整する。"""
    cfg = load_config(config)
    setup_logging(root=Path("."), level=cfg.log_level)
    console.print(f"watching: {inbox} -> {outbox}", style="cyan")
    watch_inbox(
        inbox=inbox,
        outbox=outbox,
        processed_path=processed,
        debounce_seconds=debounce,
        settings=cfg.balance,
        seed=seed,
        stop_file=Path(".crowdlore/STOP"),
        event_log_path=Path(".crowdlore/events.log"),
    )
