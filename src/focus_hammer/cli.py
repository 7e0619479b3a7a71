from __future__ import annotations

import argparse
import json
from pathlib import Path
import urllib.request

from .config import load_config
from .navigation import plan
from .presets import get_preset, preset_names
from .run_log import RunEventLog, read_json
from .session import RunSession, build_preset


def _default_config_path() -> Path:
    here = Path(__file__).resolve()
    return here.parents[2] / "config" / "settings.toml"


def _post_json(url: str, payload: dict[str, object]) -> dict[str, object]:
    data = json.dumps(payload, ensure_ascii=True).encode("utf-8")
    req = urllib.request.Request(url=url, data=data, method="POST", headers={"Content-Type": "application/json"})
    with urllib.request.urlopen(req, timeout=5) as resp:  # noqa: S310
        return json.loads(resp.read().decode("utf-8"))


def _get_json(url: str) -> dict[str, object]:
    with urllib.request.urlopen(url, timeout=5) as resp:  # noqa: S310
        return json.loads(resp.read().decode("utf-8"))


def cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    scale = None if args.duration_scale is None else float(args.duration_scale)
    preset = build_preset(cfg, args.preset or None, duration_scale=scale)
    session = RunSession(
        cfg,
        preset=preset,
        timeout_seconds=args.timeout,
    )
    enable_api = cfg.api.enabled and not bool(args.no_api)
    try:
        result = session.run(enable_api=enable_api)
    except KeyboardInterrupt:
        session.abort("keyboard_interrupt")
        raise
    payload = result.to_dict()
    payload.update(
        {
            "phantom_count": result.report.phantom_count,
            "max_stall_ms": result.report.max_stall_ms,
            "stuck_focus_episodes": result.report.stuck_focus_episodes,
            "ballast_total_mb": result.report.ballast_total_mb,
        }
    )
    print(json.dumps(payload, indent=2))
    return 0 if result.report.status == "completed" else 2


def cmd_presets(args: argparse.Namespace) -> int:
    if args.name:
        preset = get_preset(args.name)
        payload = preset.to_dict()
        if args.plan_steps > 0:
            payload["plan"] = {
                stage.name: [cmd.to_dict() for cmd in plan(stage.navigation_profile, args.plan_steps)]
                for stage in preset.stages
            }
        print(json.dumps(payload, indent=2))
        return 0
    rows = []
    for name in preset_names():
        preset = get_preset(name)
        rows.append(
            {
                "name": name,
                "description": preset.description,
                "total_ballast_mb": preset.total_ballast_mb,
                "total_duration_seconds": preset.total_duration_seconds,
                "strategies": [s.navigation_profile.strategy for s in preset.stages],
            }
        )
    print(json.dumps(rows, indent=2))
    return 0


def _print_artifact(path: Path) -> int:
    if not path.exists():
        print(json.dumps({"status": "missing", "path": str(path)}, indent=2))
        return 1
    print(json.dumps(read_json(path), indent=2))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    return _print_artifact(cfg.resolve(cfg.reporting.status_file))


def cmd_report(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    return _print_artifact(cfg.resolve(cfg.reporting.latest_report_file))


def cmd_events(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    rows = RunEventLog(cfg.resolve(cfg.runtime.events_file)).tail(args.limit)
    print(json.dumps(rows, indent=2))
    return 0


def cmd_control(args: argparse.Namespace) -> int:
    base = f"http://{args.host}:{args.port}"
    if args.control_action == "abort":
        payload = _post_json(f"{base}/control/abort", {"reason": args.reason})
    elif args.control_action == "health":
        payload = _get_json(f"{base}/health")
    elif args.control_action == "latest-report":
        payload = _get_json(f"{base}/report/latest")
    elif args.control_action == "events":
        payload = _get_json(f"{base}/events?limit={max(0, int(args.limit))}")
    else:
        raise SystemExit(f"unknown control action {args.control_action}")
    print(json.dumps(payload, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="focus-hammer: focus lockup reproduction and detection")
    parser.add_argument("--config", default=str(_default_config_path()))
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Run one staged reproduction against the simulated focus engine")
    p_run.add_argument("--preset", default="", help="Override run.preset")
    p_run.add_argument("--duration-scale", type=float, default=None, help="Override run.duration_scale")
    p_run.add_argument("--timeout", type=float, default=None, help="Abort the run after this many seconds")
    p_run.add_argument("--no-api", action="store_true", help="Disable local HTTP control server")
    p_run.set_defaults(func=cmd_run)

    p_presets = sub.add_parser("presets", help="List presets or show one in detail")
    p_presets.add_argument("name", nargs="?", default="")
    p_presets.add_argument("--plan-steps", type=int, default=0, help="Also print the first N commands per stage")
    p_presets.set_defaults(func=cmd_presets)

    p_status = sub.add_parser("status", help="Read latest run status file")
    p_status.set_defaults(func=cmd_status)

    p_report = sub.add_parser("report", help="Read latest run report")
    p_report.set_defaults(func=cmd_report)

    p_events = sub.add_parser("events", help="Tail the run event log")
    p_events.add_argument("--limit", type=int, default=20)
    p_events.set_defaults(func=cmd_events)

    p_control = sub.add_parser("control", help="Send local control commands to a running session")
    p_control.add_argument("control_action", choices=["abort", "health", "latest-report", "events"])
    p_control.add_argument("--host", default="127.0.0.1")
    p_control.add_argument("--port", type=int, default=8797)
    p_control.add_argument("--reason", default="manual_abort")
    p_control.add_argument("--limit", type=int, default=20)
    p_control.set_defaults(func=cmd_control)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
