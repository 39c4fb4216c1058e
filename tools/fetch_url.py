import argparse
import json
import sys

from dotenv import load_dotenv

from newsflow.services.extraction.readable import ENHANCED, STANDARD
from newsflow.services.orchestrator import get_fetcher
from newsflow.utils.logging_config import setup_logging


def fetch_url(url, strategy, timeout, mode, show_content):
    """Fetches a URL through the strategy chain and prints the outcome."""
    result = get_fetcher().fetch(url, strategy=strategy, timeout=timeout, mode=mode)
    payload = result.to_dict()
    if not show_content:
        payload.pop("content", None)
        payload.pop("textContent", None)
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))
    return result.success


if __name__ == "__main__":
    load_dotenv()
    setup_logging()

    parser = argparse.ArgumentParser(description="Fetch and extract a single URL.")
    parser.add_argument("url", help="The article URL to fetch.")
    parser.add_argument(
        "--strategy",
        default=None,
        help="Force one strategy (local, scrape, render, ai); default is the auto chain.",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Per-attempt timeout.")
    parser.add_argument("--mode", choices=[STANDARD, ENHANCED], default=STANDARD)
    parser.add_argument(
        "--content", action="store_true", help="Include the extracted body in the output."
    )
    args = parser.parse_args()

    ok = fetch_url(args.url, args.strategy, args.timeout, args.mode, args.content)
    sys.exit(0 if ok else 1)
