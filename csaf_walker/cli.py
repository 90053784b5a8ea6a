"""Command-line interface for csaf-walker."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

from pydantic import ValidationError

from .config import Settings, SignaturePolicy, ValidationProfile, get_settings
from .discover import SourceLocator
from .errors import ConfigurationError, DiscoveryError
from .ingest_http import build_client
from .models import AdvisoryHeader, WalkOutcome
from .validate import Validator, validate_file
from .walker import run_walk

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    p = argparse.ArgumentParser(
        prog="csaf-walker",
        description="Walk CSAF provider indexes: fetch, verify and validate advisories.",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    # --- walk ---
    walk = sub.add_parser("walk", help="Fetch, verify and validate every listed document")
    walk.add_argument("source", help="Index URL, local index path, or provider domain")
    walk.add_argument("--concurrency", type=int, default=None, help="Maximum in-flight documents")
    walk.add_argument(
        "--policy",
        choices=[p.value for p in SignaturePolicy],
        default=None,
        help="Signature policy (default: required)",
    )
    walk.add_argument(
        "--key",
        action="append",
        type=Path,
        default=None,
        help="Trusted OpenPGP public key file (repeatable)",
    )
    walk.add_argument(
        "--profile",
        choices=[p.value for p in ValidationProfile],
        default=None,
        help="Validation profile (default: mandatory)",
    )
    walk.add_argument("--store-dir", type=Path, default=None, help="Save retrieved documents here")
    walk.add_argument("--since", default=None, help="Skip documents modified before this timestamp")
    walk.add_argument(
        "--validation-timeout",
        type=float,
        default=None,
        help="Seconds before a document's validation is reported as timed out",
    )

    # --- discover ---
    discover = sub.add_parser("discover", help="List the documents an index resolves to")
    discover.add_argument("source", help="Index URL, local index path, or provider domain")

    # --- metadata ---
    metadata = sub.add_parser("metadata", help="Show the provider metadata of a source")
    metadata.add_argument("source", help="Index URL or provider domain")
    metadata.add_argument(
        "--all",
        action="store_true",
        help="Report the result of every discovery approach",
    )

    # --- validate ---
    validate = sub.add_parser("validate", help="Validate local CSAF documents")
    validate.add_argument("files", nargs="+", type=Path, help="Document files")
    validate.add_argument(
        "--profile",
        choices=[p.value for p in ValidationProfile],
        default=None,
        help="Validation profile (default: mandatory)",
    )

    # --- parse ---
    parse = sub.add_parser("parse", help="Print the tracking id, release date and title of documents")
    parse.add_argument("files", nargs="+", type=Path, help="Document files")

    return p


def _configure_logging(verbose: bool) -> None:
    """Set up root logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def _walk_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map walk flags onto Settings fields; unset flags keep the environment value."""
    overrides: Dict[str, Any] = {
        "max_concurrency": args.concurrency,
        "signature_policy": args.policy,
        "trusted_keys": args.key,
        "validation_profile": args.profile,
        "store_dir": args.store_dir,
        "since": args.since,
        "validation_timeout": args.validation_timeout,
    }
    return {k: v for k, v in overrides.items() if v is not None}


def _print_outcome(outcome: WalkOutcome) -> None:
    print(outcome.model_dump_json(), flush=True)


async def _discover(settings: Settings, source: str) -> int:
    async with build_client(settings) as client:
        locator = SourceLocator(source, client, settings)
        async for descriptor in locator.discover():
            print(descriptor.model_dump_json())
        for finding in locator.findings:
            print(json.dumps({"finding": finding.model_dump(mode="json")}))
    return 0


async def _metadata(settings: Settings, source: str, show_all: bool) -> int:
    async with build_client(settings) as client:
        locator = SourceLocator(source, client, settings)
        if not show_all:
            metadata = await locator.load_metadata()
            print(metadata.model_dump_json(indent=2))
            return 0

        found = False
        for name, result in await locator.approaches():
            if result is None:
                print(f"{name}: not found")
            elif isinstance(result, DiscoveryError):
                print(f"{name}: error: {result}")
            else:
                found = True
                print(f"{name}: {result.canonical_url or 'provider metadata found'}")
        return 0 if found else 1


def _validate(settings: Settings, files: List[Path]) -> int:
    validator = Validator.from_settings(settings)
    failed = 0
    for path in files:
        try:
            report = validate_file(path, validator)
        except OSError as exc:
            logger.error("Cannot read %s: %s", path, exc)
            failed += 1
            continue
        if not report.valid:
            failed += 1
        print(
            json.dumps(
                {
                    "file": str(path),
                    "valid": report.valid,
                    "findings": [f.model_dump(mode="json") for f in report.findings],
                }
            )
        )
    return 0 if failed == 0 else 1


def _parse(files: List[Path]) -> int:
    failed = 0
    for path in files:
        try:
            header = AdvisoryHeader.model_validate_json(path.read_bytes())
        except OSError as exc:
            logger.error("Cannot read %s: %s", path, exc)
            failed += 1
            continue
        except ValidationError as exc:
            failed += 1
            print(json.dumps({"file": str(path), "error": f"format error: {exc}"}))
            continue
        print(
            json.dumps(
                {
                    "file": str(path),
                    "id": header.tracking_id,
                    "initial_release_date": header.document.tracking.initial_release_date,
                    "title": header.document.title,
                }
            )
        )
    return 0 if failed == 0 else 1


def main(argv: list[str] | None = None) -> int:
    """Entry point for the CLI."""
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    try:
        if args.cmd == "walk":
            settings = get_settings(**_walk_overrides(args))
            summary = run_walk(settings, args.source, _print_outcome)
            print(summary.model_dump_json(), flush=True)
            if summary.discovery_findings:
                logger.warning("%d index entries were skipped", len(summary.discovery_findings))
            return 0 if summary.passed else 1

        if args.cmd == "discover":
            return asyncio.run(_discover(Settings(), args.source))

        if args.cmd == "metadata":
            return asyncio.run(_metadata(Settings(), args.source, args.all))

        if args.cmd == "validate":
            overrides = {"validation_profile": args.profile} if args.profile else {}
            return _validate(Settings(**overrides), args.files)

        if args.cmd == "parse":
            return _parse(args.files)
    except (ConfigurationError, DiscoveryError, ValidationError) as exc:
        logger.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
