"""acme-distributed command-line entry point.

Usage::

    acme-distributed [options] config.yaml
    acme-distributed -A <endpoint> config.yaml
    acme-distributed -D <endpoint> config.yaml
    acme-distributed -C <endpoint> config.yaml
    python -m acme_distributed [options] config.yaml
"""

import argparse
import sys

from acme_distributed import __version__
from acme_distributed._logging import configure_logging, get_logger
from acme_distributed.account import AccountAction
from acme_distributed.config import load_config
from acme_distributed.exceptions import AcmeError, CommandLineError, DistributedError
from acme_distributed.runner import Runner, RunOptions
from acme_distributed.variables import expand_variables

logger = get_logger(__name__)

PROGRAM = "acme-distributed"

VERSION_BANNER = (
    "{{ program }} version {{ version }}\n\n"
    "This software is put into the Public Domain under the terms of Unlicense.\n"
    "Please refer to https://www.unlicense.org for more details."
)


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise CommandLineError(message)


class _VersionAction(argparse.Action):
    def __init__(
        self, option_strings, dest=argparse.SUPPRESS, default=argparse.SUPPRESS, help=None
    ):
        super().__init__(option_strings, dest=dest, default=default, nargs=0, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        print(version_banner(), file=sys.stderr)
        parser.exit(0)


def version_banner() -> str:
    return expand_variables(VERSION_BANNER, {"program": PROGRAM, "version": __version__})


def _non_negative(value: str) -> int:
    try:
        days = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number of days: {value!r}") from None
    if days < 0:
        raise argparse.ArgumentTypeError("renew days must be a non-negative integer")
    return days


def _certificate_list(value: str) -> list[str]:
    return [name.strip() for name in value.split(",") if name.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog=PROGRAM,
        description="Issue and renew ACME certificates, distributing challenges over SSH.",
    )
    parser.add_argument("config", metavar="CONFIG", help="Path to the YAML configuration file.")
    parser.add_argument("-V", "--version", action=_VersionAction, help="Show version and exit.")

    accounts = parser.add_mutually_exclusive_group()
    accounts.add_argument(
        "-A",
        "--create-account",
        metavar="ENDPOINT",
        help="Create the ACME account for ENDPOINT.",
    )
    accounts.add_argument(
        "-D",
        "--deactivate-account",
        metavar="ENDPOINT",
        help="Deactivate the ACME account for ENDPOINT.",
    )
    accounts.add_argument(
        "-C",
        "--change-account",
        metavar="ENDPOINT",
        help="Update the ACME account for ENDPOINT.",
    )

    parser.add_argument("-e", "--endpoint", metavar="NAME", help="The ACME endpoint to use.")
    parser.add_argument(
        "-c",
        "--certificates",
        metavar="CERT[,CERT...]",
        type=_certificate_list,
        default=[],
        help="Comma separated names of the certificates to process.",
    )
    parser.add_argument(
        "-r",
        "--renew-days",
        metavar="DAYS",
        type=_non_negative,
        help="Renew certificates with at most DAYS days of remaining validity.",
    )
    parser.add_argument(
        "-g",
        "--generate-certificate-keys",
        action="store_true",
        help="Generate missing certificate private keys.",
    )
    parser.add_argument(
        "-G",
        "--generate-account-keys",
        action="store_true",
        help="Generate missing account private keys.",
    )
    parser.add_argument(
        "-L",
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        help="Log level to use (default: INFO).",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Check certificates and connectors, but do not request certificates.",
    )
    return parser


def parse_options(args: argparse.Namespace) -> RunOptions:
    """Turn parsed arguments into run options.

    An account action's endpoint takes the place of --endpoint.
    """
    action = None
    endpoint = args.endpoint
    for candidate, value in (
        (AccountAction.CREATE, args.create_account),
        (AccountAction.DEACTIVATE, args.deactivate_account),
        (AccountAction.CHANGE, args.change_account),
    ):
        if value:
            action, endpoint = candidate, value
    return RunOptions(
        endpoint=endpoint,
        certificates=tuple(args.certificates),
        renew_days=args.renew_days,
        generate_certificate_keys=args.generate_certificate_keys,
        generate_account_keys=args.generate_account_keys,
        dry_run=args.dry_run,
        account_action=action,
    )


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except CommandLineError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1
    except SystemExit as e:
        # --version and --help are done once printed
        return e.code or 0

    configure_logging(args.log_level)

    try:
        config = load_config(args.config)
        report = Runner(config, parse_options(args)).run()
    except DistributedError as e:
        logger.critical("Run aborted", extra={"error": str(e)})
        return 1
    except AcmeError as e:
        logger.critical("ACME server error", extra={"error": str(e), "status": e.status_code})
        return 1

    if report.failed:
        logger.warning(
            "Some certificates were not issued", extra={"failed": ",".join(report.failed)}
        )
    else:
        logger.info("Success")
    return 0


if __name__ == "__main__":
    sys.exit(main())
