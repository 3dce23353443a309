import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from load_config import LoadTestConfig, load_config
from load_runner import LoadRunner
from run_stats import RunStats, render_report

logger = logging.getLogger("LoadRunner.cli")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive an API workflow against a target service and report latency statistics")
    parser.add_argument("--config", default="config.json", help="Path to the run config JSON file")
    parser.add_argument("--api", default="api.json", help="Path to the API definitions JSON file")
    parser.add_argument("--testdata", default=None, help="Optional CSV file with one test-data record per row (first row is the header)")
    parser.add_argument("--concurrency", type=int, default=None, help="Override the number of concurrent workers")
    parser.add_argument(
        "--total-requests",
        dest="total_requests",
        type=int,
        default=None,
        help="Override the number of iterations (0 runs for --duration seconds)",
    )
    parser.add_argument("--duration", type=float, default=None, help="Override the run duration in seconds")
    parser.add_argument(
        "--cycle-test-data",
        dest="cycle_test_data",
        action="store_true",
        help="Reuse test data records from the start once they run out",
    )
    parser.add_argument("--log-level", dest="log_level", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")
    parser.add_argument("--json", dest="as_json", action="store_true", help="Print the statistics as JSON instead of a text report")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> LoadTestConfig:
    return load_config(
        args.config,
        args.api,
        args.testdata,
        concurrency=args.concurrency,
        total_requests=args.total_requests,
        duration=args.duration,
        test_data_mode="cycle" if args.cycle_test_data else None,
        debug=True if args.log_level.upper() == "DEBUG" else None,
    )


def format_stats(stats: RunStats, as_json: bool) -> str:
    if as_json:
        payload = stats.model_dump()
        payload["success_rate"] = stats.success_rate
        return json.dumps(payload, indent=2)
    return render_report(stats)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    try:
        cfg = build_config(args)
        runner = LoadRunner(cfg)
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Failed to load configuration: {e}")
        return 2

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        stats = loop.run_until_complete(runner.run())
    except KeyboardInterrupt:
        print("Stopping load run...")
        return 130
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

    print(format_stats(stats, args.as_json))
    return 0


if __name__ == "__main__":
    sys.exit(main())
