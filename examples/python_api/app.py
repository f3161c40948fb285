from __future__ import annotations

import argparse
from pathlib import Path

from lab_provisioner.config import apply, load, plan
from lab_provisioner.core.state import State
from lab_provisioner.inventory import generate_inventory, render_inventory


def _progress(change: object, event: str) -> None:
    address = getattr(change, "address", "unknown")
    print(f"[apply:{event}] {address}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan/apply a home lab fleet via the Python API")
    parser.add_argument("--config", default="lab-provisioner.yaml", help="Path to config file")
    parser.add_argument("--apply", action="store_true", help="Apply the generated plan")
    parser.add_argument("--parallelism", type=int, default=2, help="Concurrent operations")
    parser.add_argument(
        "--no-refresh",
        action="store_true",
        help="Skip refresh during plan",
    )
    args = parser.parse_args()

    config = load(Path(args.config))

    plan_obj = plan(config, refresh=not args.no_refresh)
    print("Plan summary:", plan_obj.summary())
    for change in plan_obj.changes:
        marker = " (replace)" if change.replace else ""
        print(f"- {change.action.value:6} {change.address}{marker}")

    if args.apply:
        result = apply(plan_obj, config, parallelism=args.parallelism, progress=_progress)
        print("Apply summary:", result.summary())
        for key, value in sorted(result.outputs.items()):
            print(f"  {key} = {value}")

        state = State.load(config.state_path)
        print(render_inventory(generate_inventory(state)))


if __name__ == "__main__":
    main()
