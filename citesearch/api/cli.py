"""
Command-line front end for citesearch.

Architectural role:
- Parses one query from argv and runs it through `citesearch.core.engine`.
- Prints progress, the retrieved citation list and the streamed answer.

Request lifecycle:
1. Load `.env`, parse arguments, configure logging.
2. Build the pipeline from the environment (configuration errors exit 2).
3. Run search -> scrape -> embed -> retrieve for the query.
4. Stream the cited answer to stdout unless `--no-answer` is given.

Error handling strategy:
- `ConfigurationError` -> `Error: ...` on stderr, exit code 2.
- Any other `PipelineError` (including answer-stage failures) or a blank
  query -> `Error: ...` on stderr, exit code 1.
- Keyboard interrupt exits 130 without a traceback.

Side effects:
- Writes progress and answer text to stdout, logs to stderr.
"""

import argparse
import sys

from dotenv import load_dotenv

from citesearch.api.logging_config import configure_logging
from citesearch.core.engine import PipelineConfig, build_pipeline
from citesearch.core.errors import ConfigurationError, PipelineError


# =========================================================
# ARGUMENTS
# =========================================================

def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError(f"{value!r} must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="citesearch",
        description="Answer a question from freshly searched web sources, with citations.",
    )
    parser.add_argument("-q", "--query", required=True, help="Search query")
    parser.add_argument(
        "-s",
        "--search",
        type=positive_int,
        default=10,
        help="Number of search results to parse (default: 10)",
    )
    parser.add_argument(
        "-k",
        "--top-k",
        type=positive_int,
        default=None,
        help="Number of chunks to retrieve (default: RETRIEVAL_TOP_K or 10)",
    )
    parser.add_argument(
        "--no-answer",
        action="store_true",
        help="Print retrieved citations only, skip answer generation",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: LOG_LEVEL or INFO)",
    )
    return parser


# =========================================================
# OUTPUT
# =========================================================

def print_citations(records) -> None:
    if not records:
        print("No sources could be retrieved for this query.")
        return
    print("\nSources:")
    for record in records:
        print(f"[{record.number}] {record.title} - {record.url}")


# =========================================================
# MAIN
# =========================================================

def main(argv=None) -> int:
    """
    Run one query end to end.

    Returns:
        Process exit code.
    """
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        pipeline_config = PipelineConfig.from_env()
    except ConfigurationError as exc:
        configure_logging(args.log_level or "INFO")
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or pipeline_config.log_level)

    try:
        pipeline = build_pipeline(config=pipeline_config)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    print(f"Searching for: {args.query}")

    try:
        print("Fetching, scraping and embedding search results...")
        records = pipeline.run(args.query, result_limit=args.search, top_k=args.top_k)
        print_citations(records)

        if args.no_answer:
            return 0

        print("\nAnswer:\n")
        for fragment in pipeline.stream_answer(args.query, records):
            print(fragment, end="", flush=True)
        print()

    except (PipelineError, ValueError) as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled by user.", file=sys.stderr)
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
