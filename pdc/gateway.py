from __future__ import annotations

from collections import defaultdict

from .runtime import RouteTarget, RuntimeState


class NoHealthyBackends(Exception):
    pass


def select_backend(service: str, runtime: RuntimeState) -> tuple[RouteTarget, str]:
    """Pick a backend instance for a service.

    Strategy:
      1) Select a pool by its selector weight
      2) Round-robin across the instances of that pool

    Returns (target_instance, pool).
    """
    targets = runtime.get_targets(service)
    if not targets:
        raise NoHealthyBackends(f"No backends for service '{service}'.")

    by_pool: dict[str, list[RouteTarget]] = defaultdict(list)
    weight_by_pool: dict[str, int] = {}
    for t in targets:
        by_pool[t.pool].append(t)
        weight_by_pool.setdefault(t.pool, max(0, int(t.weight)))

    pools: list[str] = []
    for pool, w in sorted(weight_by_pool.items()):
        if w <= 0:
            continue
        pools.extend([pool] * w)
    if not pools:
        raise NoHealthyBackends(f"No routable pools for service '{service}'.")

    chosen = pools[runtime.next_index(f"svc:{service}:pool", len(pools))]
    insts = by_pool[chosen]
    idx = runtime.next_index(f"svc:{service}:inst:{chosen}", len(insts))
    return insts[idx], chosen
