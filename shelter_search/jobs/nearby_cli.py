"""CLI to run a nearby shelter search or inspect the resolved schema."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from shelter_search.core.config import get_settings
from shelter_search.search.engine import ShelterSearchEngine

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Search evacuation shelters near a point")
    subparsers = parser.add_subparsers(dest="command", required=True)

    nearby = subparsers.add_parser("nearby", help="Find shelters around a coordinate")
    nearby.add_argument("--lat", type=float, required=True, help="Latitude in degrees")
    nearby.add_argument("--lon", type=float, required=True, help="Longitude in degrees")
    nearby.add_argument(
        "--radius-km",
        dest="radius_km",
        type=float,
        default=settings.default_radius_km,
        help="Search radius in kilometers",
    )
    nearby.add_argument("--limit", type=int, default=settings.default_limit, help="Maximum results")
    nearby.add_argument(
        "--hazard",
        dest="hazards",
        action="append",
        default=[],
        help="Hazard key the shelter must support (repeatable)",
    )
    nearby.add_argument("--hide-ineligible", action="store_true", help="Drop shelters missing a hazard")
    nearby.add_argument("--q", dest="keyword", help="Keyword matched against name, address and notes")
    nearby.add_argument("--diagnostics", action="store_true", help="Include distance diagnostics")

    subparsers.add_parser("schema", help="Print the resolved shelter schema and row counts")
    return parser


def run(argv: Optional[List[str]] = None, engine: Optional[ShelterSearchEngine] = None) -> int:
    args = build_parser().parse_args(argv)
    engine = engine or ShelterSearchEngine()

    if args.command == "schema":
        payload = engine.db_diagnostics()
    else:
        response = engine.nearby_search(
            args.lat,
            args.lon,
            radius_km=args.radius_km,
            hazard_types=args.hazards,
            limit=args.limit,
            hide_ineligible=args.hide_ineligible,
            keyword=args.keyword,
            include_diagnostics=args.diagnostics,
        )
        payload = response.to_dict()

    json.dump(payload, sys.stdout, ensure_ascii=False, indent=2, default=str)
    sys.stdout.write("\n")
    return 0 if payload.get("ok") else 1


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    try:
        code = run()
    except ValueError as exc:
        logger.error("Invalid arguments: %s", exc)
        raise SystemExit(2) from exc
    raise SystemExit(code)


if __name__ == "__main__":
    main()
