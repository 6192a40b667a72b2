from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

from kg.compile import compile_knowledge_graph, related_for, run_id_pass
from kg.config import load_compiler_config_from_env
from kg.registry import IdRegistryError


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Content repository root path (default: current directory).",
    )
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Knowledge graph compiler")
    subparsers = parser.add_subparsers(dest="command", required=True)

    assign_parser = subparsers.add_parser(
        "assign-ids",
        help="Assign numeric ids to records that lack one and persist the id registry.",
    )
    _add_common_arguments(assign_parser)
    assign_parser.add_argument(
        "--allow-id-reassignment",
        action="store_true",
        help="Accept numeric ids that now map to a different slug than in the registry.",
    )
    assign_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report assignments without writing records or the registry.",
    )

    check_parser = subparsers.add_parser(
        "check-ids",
        help="Check id integrity and stability without writing anything.",
    )
    _add_common_arguments(check_parser)

    compile_parser = subparsers.add_parser(
        "build",
        help="Stabilize ids, then write the related graph, backlinks, tag index and stats.",
    )
    _add_common_arguments(compile_parser)
    compile_parser.add_argument(
        "--allow-id-reassignment",
        action="store_true",
        help="Accept numeric ids that now map to a different slug than in the registry.",
    )
    compile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute everything in memory without writing any file.",
    )

    related_parser = subparsers.add_parser(
        "related",
        help="Print the related-items list for one record.",
    )
    related_parser.add_argument("slug", help="Record id (slug), e.g. deceptive-alignment.")
    _add_common_arguments(related_parser)
    related_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of related items (default: configured max per entity).",
    )

    return parser


def _print_payload(payload: dict[str, Any], *, pretty: bool) -> None:
    if pretty:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(json.dumps(payload, sort_keys=True))


def _error_payload(exc: IdRegistryError) -> dict[str, Any]:
    return {
        "ok": False,
        "error_type": exc.__class__.__name__,
        "message": str(exc),
        "details": exc.details,
    }


def run_assign_ids(args: argparse.Namespace) -> int:
    project_root = args.project_root.resolve()
    config = load_compiler_config_from_env()
    try:
        result = run_id_pass(
            project_root=project_root,
            config=config,
            allow_reassignment=True if args.allow_id_reassignment else None,
            dry_run=args.dry_run,
        )
    except IdRegistryError as exc:
        _print_payload(_error_payload(exc), pretty=args.pretty)
        return 1

    _print_payload(result, pretty=args.pretty)
    return 0 if result["ok"] else 1


def run_check_ids(args: argparse.Namespace) -> int:
    project_root = args.project_root.resolve()
    config = load_compiler_config_from_env()
    try:
        result = run_id_pass(
            project_root=project_root,
            config=config,
            allow_reassignment=False,
            dry_run=True,
        )
    except IdRegistryError as exc:
        _print_payload(_error_payload(exc), pretty=args.pretty)
        return 1

    # Records still waiting for an id fail the check.
    result["ok"] = result["assigned_count"] == 0
    _print_payload(result, pretty=args.pretty)
    return 0 if result["ok"] else 1


def run_build(args: argparse.Namespace) -> int:
    project_root = args.project_root.resolve()
    config = load_compiler_config_from_env()
    try:
        result = compile_knowledge_graph(
            project_root=project_root,
            config=config,
            allow_reassignment=True if args.allow_id_reassignment else None,
            dry_run=args.dry_run,
        )
    except IdRegistryError as exc:
        _print_payload(_error_payload(exc), pretty=args.pretty)
        return 1

    _print_payload(result, pretty=args.pretty)
    return 0 if result["ok"] else 1


def run_related(args: argparse.Namespace) -> int:
    project_root = args.project_root.resolve()
    config = load_compiler_config_from_env()
    if args.limit is not None and args.limit < 1:
        _print_payload({"ok": False, "message": "--limit must be >= 1"}, pretty=args.pretty)
        return 1
    try:
        result = related_for(
            args.slug,
            project_root=project_root,
            config=config,
            limit=args.limit,
        )
    except IdRegistryError as exc:
        _print_payload(_error_payload(exc), pretty=args.pretty)
        return 1

    _print_payload(result, pretty=args.pretty)
    return 0 if result["ok"] else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "assign-ids":
        return run_assign_ids(args)
    if args.command == "check-ids":
        return run_check_ids(args)
    if args.command == "build":
        return run_build(args)
    if args.command == "related":
        return run_related(args)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
