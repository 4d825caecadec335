from __future__ import annotations


def clamp_weight(weight: int) -> int:
    return max(0, min(100, int(weight)))


def split(total: int, candidate_weight: int) -> tuple[int, int]:
    """Split ``total`` replicas between the stable and candidate pools.

    candidate = round_half_up(total * weight / 100), raised to 1 whenever the
    weight is positive and capped at ``total``. Integer arithmetic keeps the
    rounding exact: 6 @ 20% -> 1.2 -> 1, 5 @ 50% -> 2.5 -> 3.

    Returns (stable, candidate); the two always add up to ``total``.
    """
    total = max(0, int(total))
    weight = clamp_weight(candidate_weight)
    candidate = (2 * total * weight + 100) // 200
    if weight > 0:
        candidate = max(candidate, 1)
    candidate = min(candidate, total)
    return total - candidate, candidate
