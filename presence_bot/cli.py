"""Check current statuses from the command line.

Usage: python -m presence_bot.cli status <name> [<name> ...]
"""

import asyncio
import sys

import httpx

from presence_bot.source import StatusSourceClient
from presence_bot.utils import sanitize_name

_STATUS_COLORS = {
    "online": "\033[32m",   # green
    "offline": "\033[31m",  # red
    "unknown": "\033[33m",  # yellow
}
_RESET = "\033[0m"


async def check_status(names: list[str]) -> dict[str, str]:
    results: dict[str, str] = {}
    async with httpx.AsyncClient() as client:
        source = StatusSourceClient(client)
        for raw in names:
            name = sanitize_name(raw)
            if not name:
                print(f"  Skipping invalid name {raw!r}")
                continue
            status = await source.fetch_status(name)
            results[name] = status
            color = _STATUS_COLORS.get(status, "")
            print(f"  {name}: {color}{status}{_RESET}")
    return results


if __name__ == "__main__":
    if len(sys.argv) < 3 or sys.argv[1] != "status":
        print("Usage:")
        print("  python -m presence_bot.cli status <name> [<name> ...]")
        sys.exit(1)

    asyncio.run(check_status(sys.argv[2:]))
