#!/usr/bin/env python3
"""Print a user's recent calls from the call_logs table.

Usage:
    python scripts/call_history.py --user <uuid>              # last 50 calls
    python scripts/call_history.py --user <uuid> --limit 10
    python scripts/call_history.py --user <uuid> --raw        # raw JSON rows

Reads SUPABASE_URL / SUPABASE_ANON_KEY (and optionally SUPABASE_ACCESS_TOKEN)
from the environment or .env.
"""

import argparse
import asyncio
import json
import os
import sys

from dotenv import load_dotenv

from peercall.backend import SupabaseClient
from peercall.history import format_history


async def fetch(user_id: str, limit: int) -> list[dict]:
    client = SupabaseClient(
        os.environ["SUPABASE_URL"],
        os.environ["SUPABASE_ANON_KEY"],
        access_token=os.getenv("SUPABASE_ACCESS_TOKEN", ""),
    )
    try:
        return await client.list_call_logs(user_id, limit=limit)
    finally:
        await client.close()


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Show recent calls for a user")
    parser.add_argument("--user", required=True, help="Profile id of the user")
    parser.add_argument("--limit", type=int, default=50, help="Number of calls (default: 50)")
    parser.add_argument("--raw", action="store_true", help="Output raw JSON rows")
    args = parser.parse_args()

    if not os.getenv("SUPABASE_URL") or not os.getenv("SUPABASE_ANON_KEY"):
        print("Error: SUPABASE_URL and SUPABASE_ANON_KEY must be set", file=sys.stderr)
        sys.exit(1)

    rows = asyncio.run(fetch(args.user, args.limit))
    if not rows:
        print("No calls found.", file=sys.stderr)
        sys.exit(1)

    if args.raw:
        print(json.dumps(rows, indent=2))
    else:
        print(format_history(rows, args.user))


if __name__ == "__main__":
    main()
