"""Trigger the expiry sweeper through the API, as the scheduler does."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for a one-off sweep."""

    parser = argparse.ArgumentParser(description="Release stock held by expired pending orders.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--cron-secret", default=os.environ.get("CRON_SECRET", ""))
    args = parser.parse_args()

    headers = {"Authorization": f"Bearer {args.cron_secret}"} if args.cron_secret else {}
    resp = httpx.post(f"{args.api_url}/api/orders/release-expired", headers=headers, timeout=30.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
