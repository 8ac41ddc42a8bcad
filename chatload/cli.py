"""CLI entry point.

Usage:
    python -m chatload run --profile default
    python -m chatload run --profile smoke --total-users 20 --output results/smoke.json
    python -m chatload run --profile-file profiles/stepped.yaml
    python -m chatload provision --total-users 1250

Everything else (endpoints, API key, intervals) comes from the environment;
see ``chatload.config.Settings``.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import structlog

from chatload.backend.client import BackendClient
from chatload.config import Settings
from chatload.orchestration.orchestrator import Orchestrator
from chatload.orchestration.ramp import PROFILES, RampProfile
from chatload.provisioning import provision
from chatload.report import collect_results, print_summary
from chatload.shared.logging import setup_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatload",
        description="Load generator for STOMP-over-WebSocket chat backends",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Drive simulated users along a ramp profile")
    source = run.add_mutually_exclusive_group()
    source.add_argument(
        "--profile",
        choices=list(PROFILES.keys()),
        default="default",
        help="Built-in ramp profile (default: default).",
    )
    source.add_argument(
        "--profile-file",
        type=str,
        default=None,
        help="YAML file with a list of {duration, target} stages.",
    )
    run.add_argument("--total-users", type=int, default=None, help="Override TOTAL_USERS.")
    run.add_argument("--seed", type=int, default=None, help="Seed for room selection.")
    run.add_argument("--output", type=str, default=None, help="Write JSON results to this path.")

    prov = sub.add_parser("provision", help="Register users and create chats between them")
    prov.add_argument("--total-users", type=int, default=None, help="Override TOTAL_USERS.")
    prov.add_argument("--max-chat-peers", type=int, default=None, help="Override MAX_CHAT_PEERS.")
    prov.add_argument("--output", type=str, default=None, help="Write JSON report to this path.")
    return parser


def resolve_settings(args: argparse.Namespace, base: Settings | None = None) -> Settings:
    settings = base or Settings()
    overrides: dict[str, Any] = {}
    if args.total_users is not None:
        overrides["total_users"] = args.total_users
    if getattr(args, "max_chat_peers", None) is not None:
        overrides["max_chat_peers"] = args.max_chat_peers
    return settings.model_copy(update=overrides) if overrides else settings


def resolve_profile(args: argparse.Namespace, settings: Settings) -> RampProfile:
    if args.profile_file:
        return RampProfile.load(args.profile_file)
    return PROFILES[args.profile](settings.total_users)


def _write_output(data: dict[str, Any], output: str | None) -> None:
    if output:
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, default=str))
        logger.info("results_written", path=str(path))
    else:
        print(json.dumps(data, indent=2, default=str))


async def run_command(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    profile = resolve_profile(args, settings)
    backend = BackendClient.create(
        settings.api_base_url,
        settings.api_key,
        timeout_seconds=settings.http_timeout_seconds,
        max_connections=settings.http_max_connections,
    )
    try:
        orchestrator = Orchestrator(profile, settings, backend, seed=args.seed)
        await orchestrator.run()
    finally:
        await backend.aclose()

    results = collect_results(orchestrator, settings)
    print_summary(results)
    return results


async def provision_command(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    backend = BackendClient.create(
        settings.api_base_url,
        settings.api_key,
        timeout_seconds=settings.http_timeout_seconds,
        max_connections=settings.http_max_connections,
    )
    try:
        report = await provision(backend, settings)
    finally:
        await backend.aclose()
    return report.as_dict()


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = resolve_settings(args)
    setup_logging(settings.log_level)

    if not settings.api_key:
        print("Missing required env var: API_KEY (x-api-key used for signin)", file=sys.stderr)
        sys.exit(2)

    if args.command == "run":
        data = asyncio.run(run_command(args, settings))
    else:
        data = asyncio.run(provision_command(args, settings))
    _write_output(data, args.output)
