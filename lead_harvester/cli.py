from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .coordinator import Coordinator
from .models import PipelineState
from .orchestrator import STAGE_ORDER


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Search, scrape and contact extraction pipeline")
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a JSON configuration file overriding defaults",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the pipeline and wait for it to finish")
    run_parser.add_argument(
        "--stages",
        default=",".join(STAGE_ORDER),
        help="Comma separated stages to run (default: %(default)s)",
    )

    import_parser = subparsers.add_parser("import-proxies", help="Import proxy URIs, one per line")
    import_parser.add_argument("file", type=Path)

    test_parser = subparsers.add_parser("test-proxies", help="Health check stored proxies")
    group = test_parser.add_mutually_exclusive_group()
    group.add_argument("--all", dest="which", action="store_const", const="all", help="Test every proxy")
    group.add_argument("--active", dest="which", action="store_const", const="active", help="Re-test active proxies")
    test_parser.set_defaults(which="untested")

    key_parser = subparsers.add_parser("add-key", help="Register a search API key")
    key_parser.add_argument("key")
    key_parser.add_argument("--engine-id", default="", help="Search engine identifier")
    key_parser.add_argument("--api-link", help="URL template overriding the configured one")

    seed_parser = subparsers.add_parser("seed-queries", help="Add search sentences to the backlog")
    seed_parser.add_argument("--file", type=Path, help="Read sentences from a file, one per line")
    seed_parser.add_argument("--limit", type=int, help="Number of generated sentences to add")
    seed_parser.add_argument("--seed", type=int, help="Random seed for generated sentences")

    subparsers.add_parser("status", help="Print store and pipeline status as JSON")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def load_overrides(path: Optional[Path]) -> Optional[Dict[str, Any]]:
    if not path:
        return None
    if not path.exists():
        logging.error("Configuration file %s does not exist", path)
        return None
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        logging.error("Unable to parse configuration file %s: %s", path, exc)
    return None


def _read_lines(path: Path) -> List[str]:
    with path.open("r", encoding="utf-8") as handle:
        return [line.strip() for line in handle if line.strip() and not line.lstrip().startswith("#")]


def _dispatch(coordinator: Coordinator, args: argparse.Namespace) -> int:
    if args.command == "run":
        stages = [name for name in args.stages.split(",") if name.strip()]
        run = coordinator.run(stages)
        print(json.dumps(run.to_dict(), ensure_ascii=False, indent=2))
        return 0 if run.state == PipelineState.COMPLETED else 1

    if args.command == "import-proxies":
        summary = coordinator.import_proxies(args.file)
        print(
            json.dumps(
                {
                    "created": summary.created_count,
                    "duplicates": summary.duplicates,
                    "invalid": summary.invalid,
                    "errors": summary.errors,
                },
                ensure_ascii=False,
                indent=2,
            )
        )
        return 0

    if args.command == "test-proxies":
        counts = coordinator.test_proxies(args.which)
        print(json.dumps(counts, ensure_ascii=False, indent=2))
        return 0

    if args.command == "add-key":
        record = coordinator.add_api_key(args.key, args.engine_id, args.api_link)
        print(record.id)
        return 0

    if args.command == "seed-queries":
        sentences = _read_lines(args.file) if args.file else None
        created = coordinator.seed_queries(sentences, limit=args.limit, seed=args.seed)
        print(f"Added {len(created)} queries")
        return 0

    if args.command == "status":
        print(json.dumps(coordinator.status(), ensure_ascii=False, indent=2, default=str))
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    overrides = load_overrides(args.config)

    coordinator = Coordinator(config_overrides=overrides)
    try:
        return _dispatch(coordinator, args)
    finally:
        coordinator.shutdown()


__all__ = [
    "build_parser",
    "main",
    "parse_args",
    "load_overrides",
]
