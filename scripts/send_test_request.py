import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import requests


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ask a running decoder server to read the QR code in an image."
    )
    parser.add_argument("image_url", help="HTTP(S) URL of the image to decode.")
    parser.add_argument(
        "--host",
        default="http://127.0.0.1:3000",
        help="Server host (default: http://127.0.0.1:3000).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=15.0,
        help="Seconds to wait for the server (default: 15).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the payload instead of sending the request.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    payload: Dict[str, Any] = {"imageUrl": args.image_url}

    if args.dry_run:
        print(json.dumps(payload, indent=2))
        return 0

    response = requests.post(
        f"{args.host.rstrip('/')}/api/decode-qr",
        json=payload,
        timeout=args.timeout,
    )

    print(f"Status: {response.status_code}")
    data = response.json()
    print(json.dumps(data, indent=2))

    if data.get("success"):
        print(f"Decoded: {data.get('data')}")
        return 0
    print(f"Decode failed: {data.get('error')}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
