# scripts/generate_codes.py
import argparse
import asyncio
import json
import sys

from partytix.codegen import generate_codes
from partytix.db import Base, SessionLocal, engine
from partytix.deps import preview_cache
from partytix.errors import TicketingError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate entry codes for a party")
    parser.add_argument("--party-id", type=int, required=True)
    tier = parser.add_mutually_exclusive_group(required=True)
    tier.add_argument("--price-id", type=int)
    tier.add_argument("--price-name")
    parser.add_argument("--quantity", type=int, required=True)
    # preview codes only redeem where the cache is shared, i.e. with REDIS_URL
    parser.add_argument("--preview", action="store_true", help="short codes kept in the preview cache only")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        batch = asyncio.run(generate_codes(
            db,
            preview_cache,
            party_id=args.party_id,
            price_id=args.price_id,
            price_name=args.price_name,
            quantity=args.quantity,
            persist=not args.preview,
        ))
    except TicketingError as e:
        print(e.message, file=sys.stderr)
        return 1
    finally:
        db.close()

    print(json.dumps(batch.to_response(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
