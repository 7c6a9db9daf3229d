"""レポート生成モジュール。バランス調整の結果をMarkdownに整形。"""

from __future__ import annotations

from crowdlore.balance import BalanceResult


def render_balance_report(result: BalanceResult, *, started: str, source: str = "") -> str:
    s = result.scenario
    sim = result.simulation
    total = sum(sim.option_votes.values())

    lines: list[str] = [
        f"# ⚖️ バランス調整レポート: {s.title or s.id}",
        "",
        f"- 開始: {started}",
        f"- scenario: `{s.id}` ({s.theme})",
    ]
    if source:
        lines.append(f"- 入力: `{source}`")
    lines += [
        f"- 試行回数: {result.attempts}",
        f"- 判定: {'✅ 合格' if result.accepted else '⚠️ 上限到達（未達のまま返却）'}",
        f"- balance score: {result.balance_score:.2f}",
        f"- 独占率: {sim.dominance_percentage}%{' (単調)' if sim.is_monotonous else ''}",
        "",
        "---",
        "",
        "## 試投票の結果",
        "",
        "| option | text | votes | effects |",
        "|---|---|---:|---|",
    ]
    for o in s.options:
        n = sim.option_votes.get(o.id, 0)
        effects = ", ".join(f"{k}={v:+d}" for k, v in o.effects.as_dict(skip_zero=True).items())
        lines.append(f"| {o.id} | {o.text} | {n}/{total} | {effects or '-'} |")
    lines.append("")

    lines += ["## 調整内容", ""]
    for a in result.adjustments:
        lines.append(f"- {a}")
    if not result.adjustments:
        lines.append("(なし)")
    lines.append("")

    return "\n".join(lines)
