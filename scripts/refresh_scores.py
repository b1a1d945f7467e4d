#!/usr/bin/env python3
import argparse
import asyncio
import logging
import sys
from pathlib import Path

script_dir = Path(__file__).resolve().parent
sys.path.append(str(script_dir.parent))

from dotenv import load_dotenv  # noqa: E402

load_dotenv()

from db.postgres import pool  # noqa: E402
from db.redis import close_redis, init_redis  # noqa: E402
from db.score_refresh import run_score_refresh  # noqa: E402


async def _run_once() -> int:
    await pool.open()
    await pool.check()
    await init_redis()
    try:
        result = await run_score_refresh()
    finally:
        await close_redis()
        await pool.close()

    logging.info(
        "hot scores refreshed items=%d scored=%d migrated=%d evicted=%d",
        result.items, result.scored, result.migrated, result.cache_keys_evicted,
    )
    return 1 if result.migration_failures or result.scoring_failures else 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Migrate remaining legacy ratings and recompute hot scores for all live copilots.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log debug output, including per-item migration progress.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s %(message)s",
    )
    sys.exit(asyncio.run(_run_once()))


if __name__ == "__main__":
    main()
