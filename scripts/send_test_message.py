"""Send a Telegram test message to the configured backup targets."""

from __future__ import annotations

import asyncio
import sys

from dotenv import load_dotenv

from rankwatch.db.session import create_engine_from_env
from rankwatch.service import build_services


async def main() -> None:
    load_dotenv()
    services = build_services(create_engine_from_env())
    message = " ".join(sys.argv[1:]) or None
    try:
        report = await services.admin.test_backup_telegram(message=message)
    finally:
        await services.client.close()
    for item in report["results"]:
        print(item["target"], "ok" if item["ok"] else f"failed: {item['error']}")
    if not report["ok"]:
        raise SystemExit(1)


if __name__ == "__main__":
    asyncio.run(main())
