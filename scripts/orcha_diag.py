"""Orcha diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from orcha.config import OrchaSettings, get_settings
from orcha.panes import PaneDriverUnavailableError, TmuxPaneDriver
from orcha.storage import InstanceInfo, InstanceRegistry, SessionStore
from orcha.tools import read_status_snapshot
from orcha.workspaces import WorkspaceError, WorktreeManager


def load_settings() -> OrchaSettings:
    return get_settings()


def load_registry(settings: OrchaSettings) -> InstanceRegistry:
    return InstanceRegistry(settings.registry_file, status_root=settings.status_root)


def resolve_instance(settings: OrchaSettings, instance_id: str | None) -> InstanceInfo:
    registry = load_registry(settings)
    instance = registry.get_instance(instance_id) if instance_id else registry.find_instance_from_cwd()
    if instance is None:
        target = instance_id or str(Path.cwd())
        print(f"No Orcha instance found for {target}")
        raise SystemExit(1)
    return instance


def cmd_instances(args: argparse.Namespace) -> None:
    settings = load_settings()
    instances = load_registry(settings).list_instances()
    if args.json:
        print(json.dumps([instance.to_document() for instance in instances], indent=2))
        return
    if not instances:
        print("No registered instances")
    for instance in instances:
        print(
            f"{instance.instance_id} [{instance.session_count} sessions] -> {instance.repo_path} "
            f"(pid {instance.pid}, started {instance.started_at})"
        )


def cmd_stale(args: argparse.Namespace) -> None:
    settings = load_settings()
    try:
        TmuxPaneDriver.ensure_available()
    except PaneDriverUnavailableError as exc:
        print(f"tmux unavailable: {exc}")
        raise SystemExit(1)

    probe = TmuxPaneDriver("orcha-diag")
    removed = load_registry(settings).cleanup_stale_instances(probe.group_exists)
    print(json.dumps({"removed": removed}, indent=2))


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = load_settings()
    instance = resolve_instance(settings, args.instance_id)
    store = SessionStore(settings.session_store_file(instance.instance_id))
    sessions = sorted(store.load(), key=lambda meta: meta.display_id)
    print(json.dumps([meta.to_document() for meta in sessions], indent=2))


def cmd_status(args: argparse.Namespace) -> None:
    settings = load_settings()
    instance = resolve_instance(settings, args.instance_id)
    status_dir = load_registry(settings).status_dir(instance.instance_id)
    print(json.dumps(read_status_snapshot(status_dir), indent=2))


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = load_settings()
    repo = Path(args.repo).expanduser().resolve() if args.repo else Path.cwd()
    manager = WorktreeManager(repo, base_dir=settings.worktree_dir)
    try:
        worktrees = asyncio.run(manager.list() if args.all else manager.list_managed())
    except WorkspaceError as exc:
        print(f"git unavailable: {exc}")
        raise SystemExit(1)
    payload = [
        {
            "path": str(info.path),
            "branch": info.branch,
            "commit": info.commit,
            "session_id": info.session_id,
            "is_primary": info.is_primary,
        }
        for info in worktrees
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Orcha diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_instances = sub.add_parser("instances", help="List registered orchestrator instances")
    p_instances.add_argument("--json", action="store_true", help="Output JSON")
    p_instances.set_defaults(func=cmd_instances)

    p_stale = sub.add_parser("stale", help="Drop instances whose tmux session no longer exists")
    p_stale.set_defaults(func=cmd_stale)

    p_sessions = sub.add_parser("sessions", help="Show persisted session metadata")
    p_sessions.add_argument("--instance-id", help="Defaults to the instance owning the current directory")
    p_sessions.set_defaults(func=cmd_sessions)

    p_status = sub.add_parser("status", help="Show agent self-reported status files")
    p_status.add_argument("--instance-id", help="Defaults to the instance owning the current directory")
    p_status.set_defaults(func=cmd_status)

    p_worktrees = sub.add_parser("worktrees", help="List Orcha-managed worktrees for a repository")
    p_worktrees.add_argument("--repo", help="Repository path (defaults to the current directory)")
    p_worktrees.add_argument("--all", action="store_true", help="Include worktrees Orcha does not manage")
    p_worktrees.set_defaults(func=cmd_worktrees)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
