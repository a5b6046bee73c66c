#!/usr/bin/env python3
"""
Seed a database with outlets, a testing center, products and opening stock,
then run one testing request through its whole lifecycle.

Usage:
    python3 scripts/seed_data.py
    python3 scripts/seed_data.py --db-url sqlite:///demo.db
    python3 scripts/seed_data.py --config stock_config/sets/default.yaml
"""

import argparse
import logging
import sys
from dataclasses import replace
from uuid import uuid4

from stock_config import get_active_config
from stock_kernel.db.engine import create_tables, drop_tables, session_scope
from stock_kernel.domain.dtos import RequestLineSpec, ResultSpec
from stock_kernel.domain.values import LocationType, TestResult
from stock_kernel.services.catalog_service import CatalogService
from stock_kernel.services.stock_ledger_service import StockLedgerService
from stock_services import ActorContext, init_stock_system

SEED_ACTOR_ID = uuid4()


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Seed demo stock and run one testing request")
    p.add_argument("--config", default=None, help="Configuration YAML (default: the default set)")
    p.add_argument("--db-url", default=None, help="Override the configured database URL")
    p.add_argument("--keep", action="store_true", help="Do not drop existing tables first")
    return p.parse_args()


def main() -> int:
    args = _parse_args()
    config = get_active_config(args.config)
    if args.db_url:
        config = replace(config, database=replace(config.database, url=args.db_url))

    service = init_stock_system(config)
    if not args.keep:
        drop_tables()
    create_tables()

    with session_scope() as session:
        catalog = CatalogService(session)
        outlet = catalog.create_location("OUT-01", "Main Street", LocationType.OUTLET, SEED_ACTOR_ID)
        catalog.create_location("OUT-02", "Harbour Mall", LocationType.OUTLET, SEED_ACTOR_ID)
        center = catalog.create_location("LAB-01", "Central Lab", LocationType.CENTER, SEED_ACTOR_ID)
        phone = catalog.create_product("PH-100", "Phone", True, SEED_ACTOR_ID)
        cable = catalog.create_product("CB-200", "Cable", False, SEED_ACTOR_ID)

        ledger = StockLedgerService(session)
        ledger.receive_stock(
            outlet.id, phone, 5, [f"PH{n:04d}" for n in range(1, 6)], actor_id=SEED_ACTOR_ID
        )
        ledger.receive_stock(outlet.id, cable, 50, actor_id=SEED_ACTOR_ID)

    manager = ActorContext(uuid4(), outlet.id, ("outlet_manager",))
    technician = ActorContext(uuid4(), center.id, ("testing_technician",))

    request = service.create_request(
        manager,
        center.id,
        [
            RequestLineSpec(phone.id, 2, ("PH0001", "PH0002")),
            RequestLineSpec(cable.id, 10),
        ],
        remark="Seeded request",
    )
    service.accept_request(technician, request.id)
    service.record_results(
        technician,
        request.id,
        [
            ResultSpec(phone.id, TestResult.PASSED, "PH0001"),
            ResultSpec(phone.id, TestResult.FAILED, "PH0002", "Screen flicker"),
            ResultSpec(cable.id, TestResult.PASSED),
        ],
    )
    done = service.complete_request(technician, request.id)

    logging.getLogger("stock_kernel").info(
        "seed_completed",
        extra={"request_number": done.request_number, "status": done.status.value},
    )
    print(f"Seeded {done.request_number}: {done.status.value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
