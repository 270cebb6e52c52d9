#!/usr/bin/env python3
"""
Load the SQL Katas practice dataset into the database named by DATABASE_URL.

Runs the same reset the /api/reset endpoint does (seed script plus learner
role grants) once, then exits non-zero if it failed.
"""

import argparse
import sys
from pathlib import Path

import anyio

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "sandbox-server"))

from sql_sandbox.config import create_reset_manager, load_settings  # noqa: E402


async def seed(settings) -> bool:
    manager = create_reset_manager(settings)
    await manager.startup()
    try:
        outcome = await manager.reset()
    finally:
        await manager.close()

    if outcome.success:
        print(f"✓ {outcome.message}")
    else:
        print(f"❌ Seed failed: {outcome.message}")
    return outcome.success


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--seed-path", help="Seed SQL file (default: packaged e-commerce seed)")
    parser.add_argument(
        "--skip-learner-role",
        action="store_true",
        help="Do not create the learner role or re-apply its grants",
    )
    args = parser.parse_args(argv)

    settings = load_settings()
    overrides = {}
    if args.seed_path:
        overrides["seed_path"] = args.seed_path
    if args.skip_learner_role:
        overrides["provision_learner_role"] = False
    if overrides:
        settings = settings.model_copy(update=overrides)

    print("Seeding SQL Katas practice dataset...")
    return 0 if anyio.run(seed, settings) else 1


if __name__ == "__main__":
    sys.exit(main())
