"""CLI entry-point: ``python -m forumdigest run`` / ``show`` / ``probe``."""

from __future__ import annotations

import argparse
import logging
import sys

import requests

from forumdigest import config
from forumdigest.forum_client import ForumClientError
from forumdigest.pipeline import run_pipeline
from forumdigest.store import ForumStore
from forumdigest.summarizer import OllamaSummarizer
from forumdigest.viewer import show_latest, show_search, show_topic

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _show(args: argparse.Namespace) -> int:
    store = ForumStore(db_path=config.DB_PATH)
    if args.view == "latest":
        show_latest(store, sys.stdout, args.limit)
    elif args.view == "id":
        if not show_topic(store, sys.stdout, args.topic_id):
            logger.error("No summary for topic %d", args.topic_id)
            return 1
    else:
        show_search(store, sys.stdout, args.query, args.limit)
    return 0


def _probe() -> int:
    summarizer = OllamaSummarizer(config.OLLAMA_BASE_URL, config.LLM_MODEL)
    try:
        info = summarizer.probe()
    except requests.RequestException as exc:
        logger.error("Inference server at %s unreachable: %s", config.OLLAMA_BASE_URL, exc)
        return 1
    print(f"ollama {info['version']} at {config.OLLAMA_BASE_URL}")
    for name in info["models"]:
        marker = "*" if name == config.LLM_MODEL else " "
        print(f" {marker} {name}")
    if not info["model_available"]:
        logger.warning("Configured model %s is not pulled on the server", config.LLM_MODEL)
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="forumdigest",
        description="Summarise forum threads with a local LLM.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    sub = parser.add_subparsers(dest="command")

    # ── run ────────────────────────────────────────────────────────────
    run_parser = sub.add_parser("run", help="Fetch the latest topics and summarise changed ones.")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch, store and gate topics but skip the model and the sink.",
    )

    # ── show ───────────────────────────────────────────────────────────
    show_parser = sub.add_parser("show", help="Print stored summaries.")
    views = show_parser.add_subparsers(dest="view", required=True)
    latest = views.add_parser("latest", help="Latest N summaries.")
    latest.add_argument("limit", nargs="?", type=int, default=10)
    by_id = views.add_parser("id", help="One topic's summary.")
    by_id.add_argument("topic_id", type=int)
    search = views.add_parser("search", help="Search titles and summaries.")
    search.add_argument("query")
    search.add_argument("limit", nargs="?", type=int, default=20)

    # ── probe ──────────────────────────────────────────────────────────
    sub.add_parser("probe", help="Check the inference server and list its models.")

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.command == "run":
        try:
            stats = run_pipeline(dry_run=args.dry_run)
        except config.ConfigError as exc:
            logger.error("Invalid configuration: %s", exc)
            sys.exit(2)
        except (ForumClientError, requests.RequestException) as exc:
            logger.error("Could not list topics: %s", exc)
            sys.exit(1)
        sys.exit(1 if stats.failed and not (stats.summarized or stats.would_summarize) else 0)
    elif args.command == "show":
        sys.exit(_show(args))
    elif args.command == "probe":
        sys.exit(_probe())
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
