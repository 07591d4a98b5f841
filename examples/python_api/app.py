from __future__ import annotations

import argparse
from pathlib import Path

from kube_provisioner.config import apply, load, plan


def _progress(change: object, event: str) -> None:
    name = getattr(change, "name", "unknown")
    print(f"[apply:{event}] {name}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan/apply kube-provisioner config via Python API")
    parser.add_argument(
        "--config",
        default="examples/nginx-tls/kube-provisioner.yaml",
        help="Path to config file",
    )
    parser.add_argument("--apply", action="store_true", help="Apply the generated plan")
    parser.add_argument("--destroy", action="store_true", help="Plan a full teardown")
    args = parser.parse_args()

    config = load(Path(args.config))

    plan_obj = plan(config, destroy=args.destroy)
    print("Plan summary:", plan_obj.summary())
    for change in plan_obj.changes:
        print(f"- {change.action.value:7} {change.name}")

    if args.apply:
        result = apply(plan_obj, config, progress=_progress)
        for outcome in result.outcomes:
            print(f"  {outcome.name}: {outcome.describe()}")
        print("Apply summary:", result.summary())


if __name__ == "__main__":
    main()
