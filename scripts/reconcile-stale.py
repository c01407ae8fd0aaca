#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, select

from db.session import SessionLocal
from ingest.errors import ExternalServiceError
from ingest.reconciler import reconcile_from_asset
from ingest.resolver import PROBE_ORDER, SlotRef
from mux import MuxClient, load_mux_config


def main() -> None:
    parser = ArgumentParser(description="Re-sync videos stuck before READY from Mux asset metadata")
    parser.add_argument("--older-min", type=int, default=30)
    parser.add_argument("--limit", type=int, default=200)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    cutoff = datetime.now(timezone.utc) - timedelta(minutes=args.older_min)
    mux = MuxClient(load_mux_config())
    session = SessionLocal()
    try:
        for kind in PROBE_ORDER:
            model = kind.model
            rows = session.execute(
                select(model)
                .where(
                    and_(
                        model.status.in_(("WAITING", "ASSET_CREATED")),
                        model.mux_asset_id.is_not(None),
                        model.updated_at < cutoff,
                    )
                )
                .limit(args.limit)
            ).scalars().all()
            print(f"[reconcile] {kind.value}: {len(rows)} stale row(s)")
            for row in rows:
                if args.dry_run:
                    print(f"[reconcile] would refresh {row.id} ({row.status}, asset={row.mux_asset_id})")
                    continue
                try:
                    results = reconcile_from_asset(session, SlotRef(kind, row), mux)
                    session.commit()
                except ExternalServiceError as exc:
                    session.rollback()
                    print(f"[reconcile] {row.id}: mux error {exc}")
                    continue
                applied = [result.event_type for result in results if result.applied]
                print(f"[reconcile] {row.id}: status={row.status} applied={applied}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
