"""Print gateway availability as reported by a running PaySettle instance.

Useful after rotating provider credentials or flipping sandbox mode.
"""

import argparse
import json

import httpx


def fetch_status(base_url: str, timeout: float) -> dict:
    """GET /gateways/status and return the decoded body."""

    response = httpx.get(f"{base_url.rstrip('/')}/gateways/status", timeout=timeout)
    response.raise_for_status()
    return response.json()


def main() -> None:
    """Parse CLI args, print a one-line summary per gateway."""

    parser = argparse.ArgumentParser(description="Show configured payment gateways and their availability.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--timeout", type=float, default=10.0)
    parser.add_argument("--json", action="store_true", help="Print the raw JSON response")
    args = parser.parse_args()

    body = fetch_status(args.base_url, args.timeout)
    if args.json:
        print(json.dumps(body, indent=2))
        return

    default = body.get("default")
    unavailable = 0
    for name, status in sorted(body.get("gateways", {}).items()):
        marker = "*" if name == default else " "
        mode = "sandbox" if status.get("sandbox") else "production"
        state = "up" if status.get("available") else ("down" if status.get("enabled") else "not configured")
        if not status.get("available"):
            unavailable += 1
        print(f"{marker} {name:<12} {mode:<10} {state:<15} features={','.join(status.get('features', []))}")
    if unavailable:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
