# src/main.py - v3
"""CLI entry point for scripted review sessions.

Usage:
    annoreview principles
    annoreview samples <principle_id> [--hide-revised]
    annoreview rename <principle_id> <label>
    annoreview opinion <sample_id> <text>
    annoreview revise <sample_id> [--undo] [--reviser NAME]
    annoreview reassign <sample_id> <principle_id> [--reviser NAME]

The bearer token comes from --token or ANNOREVIEW_TOKEN.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from annoreview.client.errors import ApiError
from annoreview.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    from pydantic import ValidationError

    from annoreview.config.settings import ConfigurationError, load_settings
    from annoreview.logging.logger import setup_logging_from_settings

    parser = _build_parser()
    args = parser.parse_args(argv)

    overrides = {}
    if args.base_url:
        overrides["api_base_url"] = args.base_url
    try:
        settings = load_settings(**overrides)
    except (ConfigurationError, ValidationError) as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 1

    setup_logging_from_settings(settings, verbose=args.verbose)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except ApiError as exc:
        print(f"error ({exc.kind.value}): {exc.message}", file=sys.stderr)
        return 2
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="annoreview",
        description=f"annoreview v{__version__} - annotation review client",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--base-url", default=None,
        help="Backend URL (default: ANNOREVIEW_API_BASE_URL or settings)",
    )
    parser.add_argument(
        "--token", default=os.environ.get("ANNOREVIEW_TOKEN"),
        help="Bearer token (default: ANNOREVIEW_TOKEN)",
    )

    subparsers = parser.add_subparsers(dest="command")

    p_principles = subparsers.add_parser("principles", help="List principles")
    p_principles.set_defaults(func=_cmd_principles)

    p_samples = subparsers.add_parser("samples", help="List samples of a principle")
    p_samples.add_argument("principle_id", type=int)
    p_samples.add_argument(
        "--hide-revised", action="store_true",
        help="Only list samples not yet revised",
    )
    p_samples.set_defaults(func=_cmd_samples)

    p_rename = subparsers.add_parser("rename", help="Rename a principle")
    p_rename.add_argument("principle_id", type=int)
    p_rename.add_argument("label")
    p_rename.set_defaults(func=_cmd_rename)

    p_opinion = subparsers.add_parser("opinion", help="Set a sample's expert opinion")
    p_opinion.add_argument("sample_id")
    p_opinion.add_argument("text")
    p_opinion.set_defaults(func=_cmd_opinion)

    p_revise = subparsers.add_parser("revise", help="Mark a sample as revised")
    p_revise.add_argument("sample_id")
    p_revise.add_argument("--undo", action="store_true", help="Mark as not revised")
    p_revise.add_argument("--reviser", default=None)
    p_revise.set_defaults(func=_cmd_revise)

    p_reassign = subparsers.add_parser("reassign", help="Move a sample to another principle")
    p_reassign.add_argument("sample_id")
    p_reassign.add_argument("principle_id", type=int)
    p_reassign.add_argument("--reviser", default=None)
    p_reassign.set_defaults(func=_cmd_reassign)

    return parser


async def _run(args: argparse.Namespace, settings) -> int:
    from annoreview.api.facade import ReviewClient
    from annoreview.session.token_session import TokenSession

    async with ReviewClient(settings=settings, session=TokenSession(args.token)) as client:
        return await args.func(client, args)


async def _cmd_principles(client, args: argparse.Namespace) -> int:
    principles = await client.load_principles()
    for p in principles:
        print(f"{p.id:>5}  {p.label_name}")
    return 0


async def _cmd_samples(client, args: argparse.Namespace) -> int:
    partition = await client.load_samples(args.principle_id, not args.hide_revised)
    stats = partition.stats
    print(
        f"{stats.revised_count}/{stats.total} revised ({stats.percentage:.0f}%)"
    )
    for s in partition.samples:
        mark = "x" if s.is_revised else " "
        print(f"[{mark}] {s.id}  {_truncate(s.target_text)}")
    return 0


async def _cmd_rename(client, args: argparse.Namespace) -> int:
    principle = await client.rename_principle(args.principle_id, args.label)
    print(f"{principle.id:>5}  {principle.label_name}")
    return 0


async def _cmd_opinion(client, args: argparse.Namespace) -> int:
    sample = await client.update_opinion(args.sample_id, args.text)
    print(f"{sample.id}: {sample.expert_opinion}")
    return 0


async def _cmd_revise(client, args: argparse.Namespace) -> int:
    sample = await client.toggle_revision(args.sample_id, not args.undo, args.reviser)
    state = "revised" if sample.is_revised else "pending"
    print(f"{sample.id}: {state}")
    return 0


async def _cmd_reassign(client, args: argparse.Namespace) -> int:
    sample = await client.reassign_sample(args.sample_id, args.principle_id, args.reviser)
    if sample is None:
        print(f"{args.sample_id}: already in principle {args.principle_id}")
    else:
        print(f"{sample.id}: moved to principle {sample.principle_id}")
    return 0


def _truncate(text: str, width: int = 60) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


if __name__ == "__main__":
    sys.exit(main())
