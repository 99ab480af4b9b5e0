"""
Command line replay of bundled scenarios.

    distrisim list [--concept raft]
    distrisim run basic-election --concept raft [--realtime --speed 2]
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from distrisim import __version__, catalog
from distrisim.config import get_settings, setup_logging
from distrisim.exceptions import DistriSimException
from distrisim.host.player import play_session
from distrisim.host.session import SimulationSession
from distrisim.metrics import SimulationMetrics
from distrisim.timeline.loader import get_scenario, load_scenarios

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="distrisim", description="Replay distributed systems scenarios")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Logging level (default from DISTRISIM_LOG_LEVEL)")
    parser.add_argument("--scenario-dir", default=None, help="Directory of scenario JSON files")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List available scenarios")
    list_parser.add_argument("--concept", "-c", default=None, help="Only scenarios of this protocol")
    list_parser.set_defaults(func=cmd_list)

    run_parser = subparsers.add_parser("run", help="Replay one scenario")
    run_parser.add_argument("scenario", help="Scenario id")
    run_parser.add_argument("--concept", "-c", default=None, help="Protocol concept of the scenario")
    run_parser.add_argument("--speed", "-s", type=float, default=None, help="Playback speed multiplier")
    run_parser.add_argument("--delay-ticks", type=int, default=None, help="Ticks a message stays in flight")
    run_parser.add_argument("--realtime", action="store_true", help="Wait between steps like a player would")
    run_parser.add_argument("--no-settle", action="store_true", help="Leave messages in flight at the end")
    run_parser.add_argument("--metrics", action="store_true", help="Print Prometheus metrics after the run")
    run_parser.add_argument("--json", action="store_true", help="Output raw JSON")
    run_parser.set_defaults(func=cmd_run)

    return parser


def cmd_list(args) -> int:
    scenarios = load_scenarios(args.scenario_dir, args.concept)
    if not scenarios:
        print("No scenarios found")
        return 0
    for scenario in scenarios:
        marker = "" if scenario.concept in catalog.PROTOCOLS else "  (no protocol)"
        print(f"{scenario.concept:<26} {scenario.id:<28} {len(scenario.events):>3} events  {scenario.name}{marker}")
    return 0


def cmd_run(args) -> int:
    scenario = get_scenario(args.scenario, args.concept, args.scenario_dir)
    settings = get_settings()
    metrics = SimulationMetrics() if (args.metrics or settings.metrics_enabled) else None
    session = SimulationSession(
        scenario,
        settings=settings,
        speed=args.speed,
        delay_ticks=args.delay_ticks,
        metrics=metrics,
    )
    settle = not args.no_settle

    if args.realtime:
        stats = asyncio.run(play_session(session, settle=settle, on_step=None if args.json else _print_step))
    else:
        while session.step_forward():
            if not args.json:
                _print_step(session)
        if settle:
            session.settle()
        stats = session.protocol.get_stats()

    if args.json:
        print(json.dumps({"scenario": scenario.id, "concept": scenario.concept, "stats": stats}, indent=2, default=str))
    else:
        print(f"\n{scenario.name}: {scenario.expected_outcome}")
        for key, value in stats.items():
            print(f"  {key}: {value}")
    if metrics is not None:
        print(metrics.export().decode("utf-8"))
    return 0


def _print_step(session: SimulationSession):
    controller = session.controller
    event = controller.events[controller.cursor - 1]
    print(f"[{event.timestamp:>6}ms] #{event.id} {event.type}: {event.description}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.scenario_dir is None:
        args.scenario_dir = get_settings().scenario_dir
    setup_logging(args.log_level or ("WARNING" if getattr(args, "json", False) else None))

    try:
        return args.func(args)
    except DistriSimException as e:
        logger.debug(f"Command failed: {e.to_dict()}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
