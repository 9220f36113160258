from __future__ import annotations

import argparse
import asyncio
import sys

from dataroom.core.logging import configure_logging
from dataroom.persistence.db import SessionLocal
from dataroom.services.watermark import WatermarkEngine, WatermarkLedger


def _build_parser() -> argparse.ArgumentParser:
    # Used when a leaked copy turns up; prints who the copy was issued to.
    parser = argparse.ArgumentParser(description="Trace a watermark tracking code back to its recipient")
    parser.add_argument("tenant_id", help="Tenant owning the document")
    parser.add_argument("document_id", help="Document the leaked copy came from")
    parser.add_argument("tracking_code", help="Code printed in the watermark footer (REF: prefix optional)")
    return parser


async def _verify(tenant_id: str, document_id: str, tracking_code: str) -> int:
    async with SessionLocal() as session:
        ledger = WatermarkLedger(session, engine=WatermarkEngine())
        record = await ledger.verify_tracking_code(
            tenant_id=tenant_id, document_id=document_id, tracking_code=tracking_code
        )
    if record is None:
        print("No watermark record matches this tracking code")
        return 2
    print(f"watermark_id={record.id}")
    print(f"viewer_id={record.viewer_id}")
    print(f"viewer_email={record.viewer_email}")
    print(f"access_timestamp={record.access_timestamp.isoformat()}")
    print(f"ip_address={record.ip_address or '-'}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_verify(args.tenant_id, args.document_id, args.tracking_code))
    except Exception as exc:  # noqa: BLE001 - surface lookup failures clearly
        print(f"verify_tracking_code failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
