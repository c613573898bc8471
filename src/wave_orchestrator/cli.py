from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

import uvicorn

from .config import load_settings, save_settings
from .container import WaveContainer
from .errors import WaveOrchestratorError
from .logging_utils import configure_logging
from .server import create_app


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(project_dir: Optional[str]) -> WaveContainer:
    return WaveContainer(_resolve_project_dir(project_dir))


def _emit(payload: Any) -> int:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")
    return 0


def _fail(exc: Exception) -> int:
    sys.stderr.write(str(exc) + "\n")
    return 1


def _server(args: argparse.Namespace) -> int:
    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port, reload=args.reload)
    return 0


def _wave_create(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    try:
        created = container.orchestrator.create_wave(
            args.name,
            args.project_uuids,
            args.workspace,
            batch_size=args.batch_size,
            mgr_manual=args.manual,
            enable_cloning=args.enable_cloning,
            run_async=False,
        )
    except (ValueError, WaveOrchestratorError) as exc:
        return _fail(exc)
    return _emit({"wave": created})


def _wave_list(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    return _emit({"waves": container.orchestrator.list_waves()})


def _wave_show(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    try:
        return _emit(container.orchestrator.get_wave_details(args.wave_id))
    except WaveOrchestratorError as exc:
        return _fail(exc)


def _wave_run(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    try:
        return _emit(container.orchestrator.run_wave(args.wave_id))
    except WaveOrchestratorError as exc:
        return _fail(exc)


def _wave_restart(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    try:
        result = container.orchestrator.restart_member(args.wave_id, args.source_id)
    except (ValueError, WaveOrchestratorError) as exc:
        return _fail(exc)
    _emit({"result": result.to_dict()})
    return 0 if result.success else 1


def _wave_restart_all(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    try:
        report = container.orchestrator.restart_all(args.wave_id, args.source_ids or None)
    except (ValueError, WaveOrchestratorError) as exc:
        return _fail(exc)
    _emit(report)
    return 0 if report["errors"] == 0 else 1


def _wave_reset(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    try:
        return _emit(container.orchestrator.reset_wave_status(args.wave_id))
    except WaveOrchestratorError as exc:
        return _fail(exc)


def _wave_logs(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    if args.source_id:
        try:
            logs = container.orchestrator.get_migration_logs(args.wave_id, args.source_id)
        except WaveOrchestratorError as exc:
            return _fail(exc)
        sys.stdout.write(logs["logs"] + "\n")
        return 0
    sys.stdout.write(container.orchestrator.get_wave_logs(args.wave_id) + "\n")
    return 0


def _task_probe(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    return _emit(container.orchestrator.process_info(args.source_id, args.target_id))


def _task_kill(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    result = container.orchestrator.kill_task(args.source_id, args.target_id, force=args.force, wave_id=args.wave_id)
    _emit(result)
    return 0 if result["killed"] else 1


def _task_hard_reset(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    return _emit(container.orchestrator.hard_reset(args.source_id, args.target_id, wave_id=args.wave_id))


def _task_unlock(args: argparse.Namespace) -> int:
    container = _ctx(args.project_dir)
    try:
        return _emit(container.orchestrator.remove_lock(args.wave_id, args.source_id))
    except (ValueError, WaveOrchestratorError) as exc:
        return _fail(exc)


def _settings_show(args: argparse.Namespace) -> int:
    settings, err = load_settings(_resolve_project_dir(args.project_dir))
    payload: dict[str, Any] = {"settings": settings.public_dict()}
    if err:
        payload["error"] = err
    return _emit(payload)


def _settings_set(args: argparse.Namespace) -> int:
    updates: dict[str, str] = {}
    for item in args.pairs:
        key, sep, value = item.partition("=")
        if not sep:
            sys.stderr.write(f"Expected key=value, got: {item}\n")
            return 1
        updates[key.strip()] = value
    settings, err = save_settings(_resolve_project_dir(args.project_dir), updates)
    if err:
        sys.stderr.write(err + "\n")
        return 1
    return _emit({"settings": settings.public_dict()})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Launch and supervise migration waves")
    parser.add_argument("--project-dir", default=None, help="Project directory (default: current working directory)")
    parser.add_argument("--log-level", default="INFO")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the web server")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=8000, type=int)
    server.add_argument("--reload", action="store_true")
    server.set_defaults(func=_server)

    wave = subparsers.add_parser("wave", help="Manage waves")
    wave_sub = wave.add_subparsers(dest="wave_cmd", required=True)
    wcreate = wave_sub.add_parser("create", help="Create a wave and launch it")
    wcreate.add_argument("name")
    wcreate.add_argument("project_uuids", nargs="+")
    wcreate.add_argument("--workspace", required=True)
    wcreate.add_argument("--batch-size", type=int, default=3)
    wcreate.add_argument("--manual", action="store_true")
    wcreate.add_argument("--enable-cloning", action="store_true")
    wcreate.set_defaults(func=_wave_create)
    wlist = wave_sub.add_parser("list", help="List waves")
    wlist.set_defaults(func=_wave_list)
    wshow = wave_sub.add_parser("show", help="Show a wave after a monitoring pass")
    wshow.add_argument("wave_id")
    wshow.set_defaults(func=_wave_show)
    wrun = wave_sub.add_parser("run", help="Run an existing wave in the foreground")
    wrun.add_argument("wave_id")
    wrun.set_defaults(func=_wave_run)
    wrestart = wave_sub.add_parser("restart", help="Restart one member")
    wrestart.add_argument("wave_id")
    wrestart.add_argument("source_id")
    wrestart.set_defaults(func=_wave_restart)
    wrestart_all = wave_sub.add_parser("restart-all", help="Clear artifacts and relaunch members")
    wrestart_all.add_argument("wave_id")
    wrestart_all.add_argument("source_ids", nargs="*")
    wrestart_all.set_defaults(func=_wave_restart_all)
    wreset = wave_sub.add_parser("reset", help="Reset every member to pending")
    wreset.add_argument("wave_id")
    wreset.set_defaults(func=_wave_reset)
    wlogs = wave_sub.add_parser("logs", help="Print wave or member logs")
    wlogs.add_argument("wave_id")
    wlogs.add_argument("--source-id", default=None)
    wlogs.set_defaults(func=_wave_logs)

    task = subparsers.add_parser("task", help="Inspect or stop migration workers")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)
    tprobe = task_sub.add_parser("probe", help="Show liveness and process details")
    tprobe.add_argument("source_id")
    tprobe.add_argument("target_id", type=int)
    tprobe.set_defaults(func=_task_probe)
    tkill = task_sub.add_parser("kill", help="Terminate a worker")
    tkill.add_argument("source_id")
    tkill.add_argument("target_id", type=int)
    tkill.add_argument("--force", action="store_true")
    tkill.add_argument("--wave-id", default=None)
    tkill.set_defaults(func=_task_kill)
    treset = task_sub.add_parser("hard-reset", help="Kill, clear artifacts and reset to pending")
    treset.add_argument("source_id")
    treset.add_argument("target_id", type=int)
    treset.add_argument("--wave-id", default=None)
    treset.set_defaults(func=_task_hard_reset)
    tunlock = task_sub.add_parser("unlock", help="Remove a member's lock file")
    tunlock.add_argument("wave_id")
    tunlock.add_argument("source_id")
    tunlock.set_defaults(func=_task_unlock)

    settings = subparsers.add_parser("settings", help="Show or edit dashboard settings")
    settings_sub = settings.add_subparsers(dest="settings_cmd", required=True)
    sshow = settings_sub.add_parser("show", help="Show settings (secrets masked)")
    sshow.set_defaults(func=_settings_show)
    sset = settings_sub.add_parser("set", help="Set editable settings")
    sset.add_argument("pairs", nargs="+", help="key=value")
    sset.set_defaults(func=_settings_set)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    raise SystemExit(main())
