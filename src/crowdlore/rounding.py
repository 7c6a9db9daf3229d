"""四捨五入（round half up）。

Python の round() は偶数丸めなので、割合や人数の計算ではこちらを使う。
"""

from __future__ import annotations

import math


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))
