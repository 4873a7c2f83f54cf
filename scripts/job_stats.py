# scripts/job_stats.py
"""
Print queue depth per state and kind.
Run: python scripts/job_stats.py
"""
from __future__ import annotations

import asyncio
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from db.engine import dispose_engine
from db.session import get_db
from jobs.store import queue_stats


async def stats() -> dict[str, dict[str, int]]:
    data: dict[str, dict[str, int]] = {}
    try:
        async for db in get_db():
            data = await queue_stats(db)
    finally:
        await dispose_engine()
    return data


def format_stats(data: dict[str, dict[str, int]]) -> str:
    lines = []
    for state, kinds in data.items():
        total = sum(kinds.values())
        lines.append(f"{state:<8} {total:>6}")
        for kind, count in sorted(kinds.items()):
            lines.append(f"  {kind:<18} {count:>6}")
    return "\n".join(lines)


if __name__ == "__main__":
    print(format_stats(asyncio.run(stats())))
