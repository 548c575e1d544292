from __future__ import annotations

from .runtime import RuntimeState


class NoHealthyBackends(Exception):
    pass


def select_backend(rollout: str, runtime: RuntimeState) -> tuple[str, str]:
    """Pick the identity that should serve the next request for a rollout.

    Strategy:
      1) Expand the applied canary weight into a 100-slot table
      2) Walk the table round-robin

    Returns (role, pod_template_hash). Falls back to stable while no canary
    replica set exists.
    """
    targets = runtime.get_targets(rollout)
    if not targets or not (targets.stable or targets.canary):
        raise NoHealthyBackends(f"No routable replica sets for rollout '{rollout}'.")

    weight = runtime.get_weight(rollout)
    weight = 0 if weight is None else max(0, min(100, int(weight)))

    slots: list[str] = ["canary"] * weight + ["stable"] * (100 - weight)
    role = slots[runtime.next_index(f"rollout:{rollout}", len(slots))]

    if role == "canary" and targets.canary:
        return role, targets.canary
    if targets.stable:
        return "stable", targets.stable
    # stable missing (first revision still being created)
    return "canary", targets.canary  # type: ignore[return-value]
