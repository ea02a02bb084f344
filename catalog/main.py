import argparse
import json
import logging
import os
from pathlib import Path

from catalog.config import get_settings
from catalog.errors import CatalogError
from catalog.scheduler import start_resync_scheduler
from catalog.schemas import ListFilters, SearchFilters, SortSpec
from catalog.service import CatalogService, build_service


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Catalog service operations")
    subparsers = parser.add_subparsers(dest="command", required=True)
    default_token = os.getenv("CATALOG_TOKEN")

    ingest_parser = subparsers.add_parser("ingest", help="bulk ingest a CSV upload")
    ingest_parser.add_argument("csv_path", help="Path to the CSV file")
    ingest_parser.add_argument("--token", default=default_token, help="Capability token")

    create_parser = subparsers.add_parser("create", help="create one record from a JSON file")
    create_parser.add_argument("json_path", help="Path to a JSON object with record fields")
    create_parser.add_argument("--token", default=default_token, help="Capability token")

    replace_parser = subparsers.add_parser("replace", help="replace one record from a JSON file")
    replace_parser.add_argument("record_id")
    replace_parser.add_argument("json_path", help="Path to a JSON object with record fields")
    replace_parser.add_argument("--token", default=default_token, help="Capability token")

    delete_parser = subparsers.add_parser("delete", help="delete one record")
    delete_parser.add_argument("record_id")
    delete_parser.add_argument("--token", default=default_token, help="Capability token")

    get_parser = subparsers.add_parser("get", help="fetch one record")
    get_parser.add_argument("record_id")

    list_parser = subparsers.add_parser("list", help="list records")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--page-size", type=int, default=None)
    list_parser.add_argument("--category")
    list_parser.add_argument("--owner")
    list_parser.add_argument("--level")
    list_parser.add_argument("--status", default="published")
    list_parser.add_argument("--sort", default="created_at")
    list_parser.add_argument("--order", default="desc", choices=["asc", "desc"])
    list_parser.add_argument("--search", help="Free-text filter")

    search_parser = subparsers.add_parser("search", help="keyword search")
    search_parser.add_argument("query")
    search_parser.add_argument("--category")
    search_parser.add_argument("--owner")
    search_parser.add_argument("--page", type=int, default=1)
    search_parser.add_argument("--page-size", type=int, default=None)

    subparsers.add_parser("stats", help="aggregate statistics")
    subparsers.add_parser("resync", help="resynchronize the search index once")
    subparsers.add_parser("health", help="report store, cache and index connectivity")

    schedule_parser = subparsers.add_parser("schedule", help="start the periodic index resync")
    schedule_parser.add_argument("--run-now", action="store_true", help="also resync once immediately")

    return parser.parse_args()


def _read_json(path: str) -> dict[str, object]:
    with Path(path).open("r", encoding="utf-8") as infile:
        return json.load(infile)


def run_command(service: CatalogService, args: argparse.Namespace) -> object:
    if args.command == "ingest":
        with Path(args.csv_path).open("rb") as upload:
            return service.ingest_batch(upload, args.token).to_dict()
    if args.command == "create":
        return {"record": service.create_record(_read_json(args.json_path), args.token).to_dict()}
    if args.command == "replace":
        return {"record": service.replace_record(args.record_id, _read_json(args.json_path), args.token).to_dict()}
    if args.command == "delete":
        return {"record": service.delete_record(args.record_id, args.token).to_dict()}
    if args.command == "get":
        result = service.get_record(args.record_id)
    elif args.command == "list":
        result = service.list_records(
            page=args.page,
            page_size=args.page_size,
            filters=ListFilters(
                category=args.category,
                owner=args.owner,
                level=args.level,
                status=args.status,
                text=args.search,
            ),
            sort=SortSpec(field=args.sort, order=args.order),
        )
    elif args.command == "search":
        result = service.search_records(
            args.query,
            filters=SearchFilters(category=args.category, owner=args.owner),
            page=args.page,
            page_size=args.page_size,
        )
    elif args.command == "stats":
        result = service.get_statistics()
    elif args.command == "health":
        return service.health()
    else:
        resync = service.resync_index()
        return {"indexed": resync.indexed, "removed": resync.removed, "skipped": resync.skipped}
    return {"data": result.data, "cached": result.cached}


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    service = build_service(settings)
    if args.command == "schedule":
        start_resync_scheduler(service, run_now=args.run_now)
        return

    try:
        output = run_command(service, args)
    except CatalogError as exc:
        print(json.dumps({"error": type(exc).__name__, "message": str(exc)}, sort_keys=True))
        raise SystemExit(1) from exc

    print(json.dumps(output, indent=2, sort_keys=True))
    if args.command == "health" and output["status"] != "healthy":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
