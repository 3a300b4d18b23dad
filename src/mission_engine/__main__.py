"""Entry point for `python -m mission_engine` and the `mission-engine` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from pathlib import Path

from pydantic import ValidationError

from mission_engine.agent_runtime import AgentExecutor
from mission_engine.engine import MissionEngine
from mission_engine.errors import OrchestrationError
from mission_engine.models import DecisionAction, Phase, RequestSubmission
from mission_engine.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dependency-aware mission orchestration engine")
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="State store directory (default: MISSION_STATE_STORE_ROOT)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    submit = subcommands.add_parser("submit", help="Submit a request (JSON file) with its missions")
    submit.add_argument("--request-file", type=Path, required=True)

    subcommands.add_parser("status", help="Print a status snapshot as JSON")
    subcommands.add_parser("recover", help="Reconcile the store after an interruption")

    decide = subcommands.add_parser("decide", help="Resolve an escalated mission")
    decide.add_argument("mission_id")
    decide.add_argument("action", choices=[action.value for action in DecisionAction])
    decide.add_argument("--rationale", default="")

    abandon = subcommands.add_parser("abandon", help="Abandon a mission at its next unit boundary")
    abandon.add_argument("mission_id")

    run = subcommands.add_parser("run", help="Run the scheduling loop with an agent-backed executor")
    run.add_argument(
        "--agent-capabilities",
        default=",".join(phase.value for phase in Phase),
        help="Comma-separated capabilities advertised by the agent executor",
    )
    run.add_argument("--agent-slots", type=int, default=1, help="Concurrent units the agent executor accepts")
    run.add_argument("--executor-id", default="agent-1")
    return parser.parse_args(argv)


def load_submission(request_file: Path) -> RequestSubmission:
    if not request_file.is_file():
        raise FileNotFoundError(f"Request file does not exist: {request_file}")
    try:
        return RequestSubmission.model_validate_json(request_file.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"Request file {request_file} is invalid: {exc}") from exc


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        if args.state_store_root is not None:
            settings = dataclasses.replace(settings, state_store_root=str(args.state_store_root)).normalized()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2

    with MissionEngine(settings=settings) as engine:
        try:
            if args.command == "submit":
                request = engine.submit_request(load_submission(args.request_file))
                print(request.model_dump_json(indent=2))
            elif args.command == "status":
                print(engine.status().model_dump_json(indent=2))
            elif args.command == "recover":
                report = engine.recover()
                print(json.dumps([entry.model_dump(mode="json") for entry in report.entries], indent=2))
            elif args.command == "decide":
                mission = engine.decide(args.mission_id, DecisionAction(args.action), args.rationale)
                print(f"{mission.mission_id} status={mission.status.value}")
            elif args.command == "abandon":
                mission = engine.request_abandon(args.mission_id)
                state = "deferred" if mission.abandon_requested else mission.status.value
                print(f"{mission.mission_id} abandon={state}")
            elif args.command == "run":
                capabilities = frozenset(cap.strip() for cap in args.agent_capabilities.split(",") if cap.strip())
                engine.register_executor(
                    AgentExecutor(
                        executor_id=args.executor_id,
                        capabilities=capabilities,
                        model_name=settings.executor_model,
                        workspace_root=settings.workspace_root_path,
                        slots=args.agent_slots,
                    )
                )
                result = engine.run()
                snapshot = engine.status()
                print(
                    json.dumps(
                        {
                            "ticks": result.get("iteration", 0),
                            "dispatched": len(result.get("dispatched", [])),
                            "escalated": [view.mission_id for view in snapshot.escalated],
                        },
                        indent=2,
                    )
                )
                return 1 if snapshot.escalated else 0
        except (OrchestrationError, OSError, ValueError) as exc:
            logging.error("%s failed: %s", args.command, exc)
            return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
