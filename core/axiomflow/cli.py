"""
Command-line interface for axiomflow.

Usage:
    axiomflow validate examples/templates/lead_generation/workflow.json
    axiomflow run examples/templates/lead_generation/workflow.json \\
        --input '{"criteria": "fintech"}' --store ./executions
    axiomflow show exec_1234 --store ./executions
    axiomflow resume <token> --decision '{"decision": "approve"}' \\
        --workflow examples/templates/support_ticket/workflow.json --store ./executions

``run --mock`` swaps the model and the integration connector for canned
responses, which is handy for checking a workflow's wiring offline.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

from axiomflow.config import load_engine_config
from axiomflow.graph.errors import ResumeError, WorkflowError
from axiomflow.graph.executor import WorkflowExecutor
from axiomflow.graph.validator import validate_all
from axiomflow.graph.workflow import WorkflowBundle, load_bundle
from axiomflow.observability import configure_logging
from axiomflow.schemas.execution_state import ExecutionState, ExecutionStatus
from axiomflow.storage.execution_store import ExecutionNotFound
from axiomflow.storage.file_store import FileExecutionStore

DEFAULT_STORE = Path.home() / ".axiomflow" / "executions"


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_json_arg(value: str, what: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise SystemExit(f"--{what} is not valid JSON: {e}") from e


def _build_executor(bundle: WorkflowBundle, store_dir: Path, mock: bool) -> WorkflowExecutor:
    config = load_engine_config()
    if mock:
        from axiomflow.integrations.connector import RecordingConnector
        from axiomflow.llm.mock import MockModelInvoker

        model = MockModelInvoker(default="ok")
        connector = RecordingConnector()
    else:
        from axiomflow.integrations.nango import NangoConnector
        from axiomflow.llm.litellm import LiteLLMProvider

        model = LiteLLMProvider(config)
        connector = NangoConnector() if os.environ.get("NANGO_SECRET_KEY") else None

    return WorkflowExecutor(
        store=FileExecutionStore(store_dir),
        model=model,
        connector=connector,
        config=config,
        agents=bundle.agent_catalog(),
        tools=bundle.tool_catalog(),
    )


def _exit_code(state: ExecutionState) -> int:
    return 1 if state.status == ExecutionStatus.FAILED else 0


def cmd_validate(args: argparse.Namespace) -> int:
    bundle = load_bundle(args.workflow)
    errors = validate_all(
        bundle.workflow,
        agents=bundle.agent_catalog() or None,
        tools=bundle.tool_catalog() or None,
    )
    if args.json:
        _print_json({"valid": not errors, "errors": [e.to_dict() for e in errors]})
    elif errors:
        print(f"✗ {bundle.workflow.id}: {len(errors)} problem(s)")
        for error in errors:
            where = error.node_id or error.edge_id or "-"
            print(f"  [{error.kind}] {where}: {error.message}")
    else:
        workflow = bundle.workflow
        print(
            f"✓ {workflow.id} v{workflow.version}: "
            f"{len(workflow.nodes)} nodes, {len(workflow.edges)} edges"
        )
    return 1 if errors else 0


def cmd_run(args: argparse.Namespace) -> int:
    bundle = load_bundle(args.workflow)
    variables = _parse_json_arg(args.input, "input") if args.input else {}
    executor = _build_executor(bundle, args.store, args.mock)
    try:
        state = asyncio.run(executor.start(bundle.workflow, variables, tenant_id=args.tenant))
    except WorkflowError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    _print_json(state.summary())
    return _exit_code(state)


def cmd_resume(args: argparse.Namespace) -> int:
    bundle = load_bundle(args.workflow)
    decision = _parse_json_arg(args.decision, "decision")
    executor = _build_executor(bundle, args.store, args.mock)
    try:
        state = asyncio.run(executor.resume(bundle.workflow, args.token, decision))
    except ResumeError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2
    _print_json(state.summary())
    return _exit_code(state)


def cmd_show(args: argparse.Namespace) -> int:
    store = FileExecutionStore(args.store)
    try:
        state = asyncio.run(store.load(args.execution_id))
    except ExecutionNotFound as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    if args.full:
        _print_json(state.model_dump(mode="json"))
    else:
        _print_json(state.summary())
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Check a workflow definition")
    validate_parser.add_argument("workflow", type=Path, help="Path to workflow.json")
    validate_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Start an execution")
    run_parser.add_argument("workflow", type=Path, help="Path to workflow.json")
    run_parser.add_argument("--input", help="Initial variables as a JSON object")
    run_parser.add_argument("--tenant", default="", help="Tenant id for integration calls")
    run_parser.set_defaults(func=cmd_run)

    resume_parser = subparsers.add_parser("resume", help="Resume a suspended execution")
    resume_parser.add_argument("token", help="Resume token of the pending human input")
    resume_parser.add_argument("--decision", required=True, help="Decision as JSON")
    resume_parser.add_argument("--workflow", type=Path, required=True, help="Path to workflow.json")
    resume_parser.set_defaults(func=cmd_resume)

    for parser in (run_parser, resume_parser):
        parser.add_argument("--store", type=Path, default=DEFAULT_STORE, help="Execution store dir")
        parser.add_argument(
            "--mock", action="store_true", help="Use canned model and connector responses"
        )

    show_parser = subparsers.add_parser("show", help="Show an execution")
    show_parser.add_argument("execution_id")
    show_parser.add_argument(
        "--store", type=Path, default=DEFAULT_STORE, help="Execution store dir"
    )
    show_parser.add_argument("--full", action="store_true", help="Dump the complete state")
    show_parser.set_defaults(func=cmd_show)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="axiomflow",
        description="axiomflow - validate and run workflow graphs",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
