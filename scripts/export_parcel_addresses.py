"""Export every Boston parcel id with its display address from EGIS.

The output feeds the address search index:

    [{"parcel_id": "0100001000", "full_address": "1 Main St, Boston, 02129"}, ...]
"""

import asyncio
import json
import sys
from pathlib import Path

import httpx

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from taxlookup.aggregation import fetch_parcel_address_pairings
from taxlookup.config import settings
from taxlookup.egis import EGISClient
from taxlookup.schemas import ParcelAddressPairing


async def fetch_pairings() -> list[ParcelAddressPairing]:
    async with httpx.AsyncClient(timeout=settings.egis_timeout) as http:
        client = EGISClient(http, base_url=settings.egis_base_url)
        return await fetch_parcel_address_pairings(client)


def export_pairings(output: Path, dry_run: bool = False) -> int:
    """Fetch all pairings and write them as JSON. Returns the count."""
    print("Fetching parcel id / address pairings from EGIS...")
    pairings = asyncio.run(fetch_pairings())
    print(f"  Fetched {len(pairings)} pairings")

    missing = sum(1 for p in pairings if p.full_address == "Address not available")
    if missing:
        print(f"  {missing} parcels have no address")

    if dry_run:
        for pairing in pairings[:10]:
            print(f"  {pairing.parcel_id}: {pairing.full_address}")
        print("\nDry run, nothing written. Use --write to save.")
        return len(pairings)

    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, "w", encoding="utf-8") as f:
        json.dump([p.model_dump() for p in pairings], f, indent=2)

    print(f"\n=== Export complete! ===")
    print(f"  {len(pairings)} pairings written to {output}")
    return len(pairings)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Export Boston parcel id / address pairings")
    parser.add_argument("--output", type=Path, default=Path("parcel_addresses.json"),
                        help="JSON file to write (default: parcel_addresses.json)")
    parser.add_argument("--write", action="store_true",
                        help="Actually write the file (default is dry run)")
    args = parser.parse_args()

    export_pairings(args.output, dry_run=not args.write)
