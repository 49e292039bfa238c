"""EHR audit chain command line interface.

Usage:
    ehr-audit verify CHANNEL DATE [--log-dir DIR] [--diagnostics-log FILE]
    ehr-audit verify-all [--channel CHANNEL] [--log-dir DIR] [--diagnostics-log FILE]
    ehr-audit stats CHANNEL DATE [--log-dir DIR] [--diagnostics-log FILE]

Output is JSON on stdout. Exit codes:
    0  all verified chains are intact
    1  at least one integrity violation (or missing file)
    2  usage or configuration error
"""

import argparse
import json
import sys
from datetime import date

from .chain.store import log_file_name
from .chain.verifier import IntegrityVerifier
from .channels import CHANNEL_NAME_PATTERN
from .config import AuditConfig
from .diagnostics import configure_diagnostics
from .errors import ConfigurationError
from .statistics import collect_statistics

EXIT_OK = 0
EXIT_VIOLATION = 1
EXIT_USAGE = 2


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r} (expected YYYY-MM-DD)") from None


def _channel(value: str) -> str:
    if not CHANNEL_NAME_PATTERN.match(value):
        raise argparse.ArgumentTypeError(f"invalid channel name {value!r}")
    return value


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2))


def _verifier(args: argparse.Namespace) -> IntegrityVerifier:
    config = AuditConfig.from_env(**({"log_dir": args.log_dir} if args.log_dir else {}))
    return IntegrityVerifier(config.log_dir, config.state_key)


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify one (channel, date) chain."""
    result = _verifier(args).verify(args.channel, args.date)
    _print_json(result.to_dict())
    if not result.valid:
        print(f"INTEGRITY VIOLATION: {result.error}", file=sys.stderr)
        return EXIT_VIOLATION
    return EXIT_OK


def cmd_verify_all(args: argparse.Namespace) -> int:
    """Verify every chain in the log directory."""
    results = _verifier(args).verify_all(args.channel)
    failed = [r for r in results if not r.valid]
    _print_json(
        {
            "files_verified": len(results),
            "violations": len(failed),
            "results": [r.to_dict() for r in results],
        }
    )
    for result in failed:
        print(
            f"INTEGRITY VIOLATION: {result.channel}/{result.date}: {result.error}", file=sys.stderr
        )
    return EXIT_VIOLATION if failed else EXIT_OK


def cmd_stats(args: argparse.Namespace) -> int:
    """Print statistics of one (channel, date) chain."""
    config = AuditConfig.from_env(**({"log_dir": args.log_dir} if args.log_dir else {}))
    path = config.log_dir / log_file_name(args.channel, args.date)
    try:
        stats = collect_statistics(path, args.channel, args.date)
    except FileNotFoundError:
        _print_json({"error": "Log file not found", "file": path.name})
        return EXIT_USAGE
    _print_json(stats.to_dict())
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="ehr-audit", description="Verify and inspect EHR audit log chains"
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--log-dir", help="Log directory (default: $AUDIT_LOG_DIR)")
    common.add_argument(
        "--diagnostics-log", metavar="FILE", help="Write JSON diagnostics to this file"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    verify = subparsers.add_parser("verify", parents=[common], help="Verify one chain file")
    verify.add_argument("channel", type=_channel)
    verify.add_argument("date", type=_iso_date)
    verify.set_defaults(func=cmd_verify)

    verify_all = subparsers.add_parser(
        "verify-all", parents=[common], help="Verify every chain file"
    )
    verify_all.add_argument("--channel", type=_channel, help="Only verify this channel")
    verify_all.set_defaults(func=cmd_verify_all)

    stats = subparsers.add_parser("stats", parents=[common], help="Show chain file statistics")
    stats.add_argument("channel", type=_channel)
    stats.add_argument("date", type=_iso_date)
    stats.set_defaults(func=cmd_stats)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the CLI and return its exit code."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return EXIT_USAGE if e.code else EXIT_OK

    if args.diagnostics_log:
        configure_diagnostics(args.diagnostics_log)
    try:
        return args.func(args)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
