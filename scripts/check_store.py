"""Validates a relayhub store and reports endpoint ordering drift.

With --repair, renumbers sort_order densely in the current display order.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import List, Optional

from relayhub.admin.errors import StorageError
from relayhub.admin.models import DEFAULT_TRANSFORMER, TRANSFORMERS, Endpoint
from relayhub.admin.storage import SQLiteStorage

DB_PATH = Path(os.environ.get("RELAYHUB_DB", "data/relayhub.db"))


def find_problems(endpoints: List[Endpoint]) -> List[str]:
    problems: List[str] = []
    orders = [endpoint.sort_order for endpoint in endpoints]
    if sorted(orders) != list(range(len(endpoints))):
        problems.append(f"sortOrder values {sorted(orders)} are not 0..{len(endpoints) - 1}")
    for endpoint in endpoints:
        if endpoint.transformer not in TRANSFORMERS:
            problems.append(f"Endpoint {endpoint.name} has unknown transformer {endpoint.transformer!r}")
        if endpoint.transformer != DEFAULT_TRANSFORMER and not endpoint.model.strip():
            problems.append(f"Endpoint {endpoint.name} ({endpoint.transformer}) has no model")
        if endpoint.api_url.endswith("/"):
            problems.append(f"Endpoint {endpoint.name} apiUrl has a trailing slash")
    return problems


def repair_order(storage: SQLiteStorage, endpoints: List[Endpoint]) -> int:
    fixed = 0
    for index, endpoint in enumerate(endpoints):
        if endpoint.sort_order != index:
            storage.update_endpoint(endpoint.model_copy(update={"sort_order": index}))
            fixed += 1
    return fixed


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--db", type=Path, default=DB_PATH)
    parser.add_argument("--repair", action="store_true", help="Renumber sortOrder densely")
    args = parser.parse_args(argv)

    if not args.db.exists():
        print(f"{args.db} does not exist")
        return 1
    storage = SQLiteStorage(args.db)
    try:
        endpoints = storage.get_endpoints()
    except StorageError as exc:
        print("Store unreadable:\n")
        print(exc)
        return 1

    if args.repair:
        print(f"Renumbered {repair_order(storage, endpoints)} endpoints")
        endpoints = storage.get_endpoints()

    problems = find_problems(endpoints)
    if problems:
        print("Warnings:")
        for item in problems:
            print(f" - {item}")
        return 1

    print("Store OK. Endpoints:")
    for endpoint in endpoints:
        state = "enabled" if endpoint.enabled else "disabled"
        print(f" - [{endpoint.sort_order}] {endpoint.name} -> {endpoint.transformer} ({state})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
