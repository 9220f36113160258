from __future__ import annotations

import argparse
import asyncio
import sys

from dataroom.core.logging import configure_logging
from dataroom.persistence.db import SessionLocal
from dataroom.services.rooms import expire_rooms


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mark data rooms past their expiry as EXPIRED")
    return parser


async def _expire() -> int:
    async with SessionLocal() as session:
        room_ids = await expire_rooms(session)
    for room_id in room_ids:
        print(f"Expired data room {room_id}")
    print(f"Expired {len(room_ids)} data room(s)")
    return 0


def main() -> int:
    configure_logging()
    _build_parser().parse_args()
    try:
        return asyncio.run(_expire())
    except Exception as exc:  # noqa: BLE001 - surface maintenance failures clearly
        print(f"expire_rooms failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
