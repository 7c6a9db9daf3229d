"""勝者の決定と結果サマリ。"""

from __future__ import annotations

import logging
import re

from crowdlore.errors import ValidationError
from crowdlore.rounding import round_half_up
from crowdlore.scenario import OPTION_COUNT, Option
from crowdlore.votes import VoteTally

logger = logging.getLogger(__name__)

_LEADING_ARTICLE = re.compile(r"^(to\s+|the\s+)")


def determine_winner(options: list[Option], tally: VoteTally) -> Option:
    """定義順に走査し、票数が真に大きいときだけ入れ替える。

    同数の場合は定義順で先の選択肢が勝つ（票がゼロなら先頭）。
    """
    if len(options) != OPTION_COUNT:
        raise ValidationError(f"expected {OPTION_COUNT} options, got {len(options)}")

    winner = options[0]
    max_votes = 0
    for o in options:
        n = tally.option_votes.get(o.id, 0)
        if n > max_votes:
            max_votes = n
            winner = o

    logger.info("winning option: %r with %d votes", winner.text, max_votes)
    return winner


def winning_percentage(option: Option, tally: VoteTally) -> int:
    if tally.total_votes <= 0:
        return 0
    return round_half_up(100 * tally.option_votes.get(option.id, 0) / tally.total_votes)


def _prefix(percentage: int) -> str:
    if percentage >= 70:
        return "The people overwhelmingly chose to"
    if percentage >= 60:
        return "Reddit decided that the community should"
    if percentage >= 50:
        return "After much deliberation, the people chose to"
    return "In a close decision, the community chose to"


def generate_summary(option: Option, tally: VoteTally) -> str:
    """例: "In a close decision, the community chose to rebuild the bridge. Stone by stone." """
    action = _LEADING_ARTICLE.sub("", option.text.lower())
    return f"{_prefix(winning_percentage(option, tally))} {action}. {option.description}"
