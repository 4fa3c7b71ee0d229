# main.py
import argparse
import asyncio
import logging
import sys
from pathlib import Path

from agent import DocumentAgent
from errors import AuthenticationError, BatchAbortedError, ConfigurationError
from settings import WORKFLOWS, load_settings, validate_settings


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(message)s",
        datefmt="%H:%M:%S",
    )
    # httpx logs every OpenAI request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate and download Dari documents for a batch of plots.")
    parser.add_argument("--workflow", choices=sorted(WORKFLOWS), default="site-plan")
    parser.add_argument("--spreadsheet", type=Path, help="Excel or CSV file listing the plots")
    parser.add_argument("--column", type=int, help="0-based column holding plot ids (default: 'Plot Id' header)")
    parser.add_argument("--config", type=Path, help="JSON overrides file (default: $AGENT_CONFIG_PATH)")
    parser.add_argument("--mobile", help="UAE PASS mobile number")
    parser.add_argument("--downloads", type=Path, help="Directory for downloaded documents")
    parser.add_argument("--ledger", type=Path, help="Application history JSON file")
    parser.add_argument("--dry-run", action="store_true", help="Stop every plot before clicking Pay")
    parser.add_argument("--headless", action="store_true", default=None, help="Hide the browser window")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = load_settings(
            args.workflow,
            config_path=args.config,
            cli={
                "spreadsheet_path": args.spreadsheet,
                "plot_column_index": args.column,
                "mobile_number": args.mobile,
                "download_dir": args.downloads,
                "ledger_path": args.ledger,
                "headless": args.headless,
                "payment_enabled": False if args.dry_run else None,
            },
        )
        validate_settings(settings)
    except ConfigurationError as exc:
        print(f"❌ {exc}")
        return 2

    print(f"\n🚀 Starting {settings.preset.title}...\n")
    agent = DocumentAgent(settings)
    try:
        report = asyncio.run(agent.run())
    except ConfigurationError as exc:
        print(f"❌ {exc}")
        return 2
    except AuthenticationError as exc:
        print(f"\n❌ Authentication failed: {exc}")
        print("   Login did not complete. Approve the UAE PASS request faster or raise waitTimes.uaePassTimeout.")
        return 3
    except BatchAbortedError as exc:
        print("\n".join(exc.report.render_summary()))
        print("\n   Nothing was charged. Top up the DARI wallet and run the batch again.")
        return 4

    print("\n".join(report.render_summary()))
    if report.aborted:
        print("\n   Paid plots are in the application history and resume on the next run.")
        return 3
    print("\n✅ Batch finished.\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
