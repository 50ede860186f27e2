#!/usr/bin/env python
"""
Agent Mafia CLI
===============

Run jobs in-process, manage the standing hierarchy, or start the API server.

Usage:
    agentmafia run "Add a /health endpoint" [--working-dir DIR] [--dynamic [--yes]] [--max-turns N]
    agentmafia agents
    agentmafia hire "Paulie Gualtieri" --role capo --parent <underboss id>
    agentmafia serve [--host HOST] [--port PORT]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from rich.tree import Tree

from agentmafia.config import AgentMafiaConfig
from agentmafia.db import close_db, init_db
from agentmafia.errors import AgentMafiaError
from agentmafia.events import Event, EventType, event_bus
from agentmafia.orchestrator import Orchestrator, RunOutcome
from agentmafia.output import (
    confirm,
    console,
    create_table,
    print_error,
    print_event,
    print_panel,
    print_info,
    print_muted,
    print_success,
    print_warning,
    prompt,
    setup_rich_logging,
)
from agentmafia.store import ConversationStore, children_by_parent

logger = logging.getLogger(__name__)

OUTCOME_MESSAGES = {
    RunOutcome.COMPLETED: (print_success, "Job completed"),
    RunOutcome.STOPPED: (print_warning, "Job stopped"),
    RunOutcome.TURN_LIMIT_EXCEEDED: (print_error, "Job hit the turn limit"),
    RunOutcome.FAILED: (print_error, "Job failed"),
}


def _load_config(args: argparse.Namespace) -> AgentMafiaConfig:
    return AgentMafiaConfig.load(args.data_dir)


def show_crew(agents: list) -> None:
    """Print a designed crew as a table."""
    names = {a["id"]: a["name"] for a in agents}
    table = create_table(title="Proposed crew", columns=["Name", "Role", "Specialty", "Reports to"])
    for agent in agents:
        table.add_row(
            f"[am.role.{agent['role']}]{agent['name']}[/]",
            agent["role"],
            agent.get("specialty") or "",
            names.get(agent.get("parent_id"), "-"),
        )
    console.print(table)


# =============================================================================
# run
# =============================================================================

async def _run_job(args: argparse.Namespace) -> int:
    config = _load_config(args)
    await init_db(config.data_dir)
    store = ConversationStore()
    orchestrator = Orchestrator(store, config)
    escalations: asyncio.Queue[Event] = asyncio.Queue()
    loop = asyncio.get_running_loop()
    results: dict[str, str] = {}
    unsubscribe = None

    def sink(event: Event) -> None:
        print_event(event.event_type, event.data)
        if event.event_type == EventType.ESCALATION.value:
            loop.call_soon_threadsafe(escalations.put_nowait, event)
        elif event.event_type == EventType.TASK_COMPLETE.value:
            results["result"] = event.data.get("result") or ""

    try:
        if args.max_turns is not None:
            await store.set_setting("maxAgentTurns", args.max_turns)

        working_dir = str(Path(args.working_dir).resolve()) if args.working_dir else None
        if args.dynamic:
            org = await orchestrator.create_dynamic_org(args.task, working_dir)
            show_crew(org.agents)
            conversation_id = org.conversation_id
            if not args.yes and not await asyncio.to_thread(confirm, "Put this crew to work?", default=True):
                await orchestrator.delete_conversation(conversation_id)
                print_muted("Crew dismissed")
                return 1
            unsubscribe = event_bus.subscribe(conversation_id, sink)
            await orchestrator.confirm_dynamic_org(conversation_id)
        else:
            conversation_id = await orchestrator.start_task(args.task, working_directory=working_dir)
            # The run task has not been scheduled yet, so no event is missed
            unsubscribe = event_bus.subscribe(conversation_id, sink)

        print_muted(f"Conversation {conversation_id}")
        run = asyncio.ensure_future(orchestrator.wait_for_run(conversation_id))
        outcome: Optional[RunOutcome] = None
        try:
            while outcome is None:
                asked = asyncio.ensure_future(escalations.get())
                done, _ = await asyncio.wait({run, asked}, return_when=asyncio.FIRST_COMPLETED)
                if asked in done:
                    event = asked.result()
                    print_panel(
                        event.data.get("question") or "",
                        title=f"{event.data.get('agentName')} needs the boss",
                        style="am.warn",
                    )
                    answer = await asyncio.to_thread(prompt, "Your answer")
                    if not await orchestrator.answer_escalation(event.data["escalationId"], answer or "Use your judgment"):
                        print_warning("That escalation is no longer waiting")
                else:
                    asked.cancel()
                if run in done:
                    outcome = run.result() or RunOutcome.FAILED
        except (KeyboardInterrupt, asyncio.CancelledError):
            print_warning("Stopping the crew...")
            orchestrator.cancel_orchestration(conversation_id)
            outcome = await orchestrator.wait_for_run(conversation_id) or RunOutcome.STOPPED

        printer, message = OUTCOME_MESSAGES[outcome]
        printer(message)
        if results.get("result"):
            print_panel(results["result"], title="Result")
        return 0 if outcome == RunOutcome.COMPLETED else 1
    except AgentMafiaError as e:
        print_error(str(e))
        return 1
    finally:
        if unsubscribe is not None:
            unsubscribe()
        await orchestrator.shutdown()
        await orchestrator.providers.aclose()
        await close_db()


def cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run_job(args))


# =============================================================================
# agents / hire
# =============================================================================

async def _show_agents(args: argparse.Namespace) -> int:
    config = _load_config(args)
    await init_db(config.data_dir)
    try:
        store = ConversationStore()
        agents = await store.list_agents()
        if not agents:
            print_info("No agents yet. Hire an underboss first: agentmafia hire NAME --role underboss")
            return 0
        index = children_by_parent(agents)
        tree = Tree("[am.accent]The Family[/]")

        def add(node: Tree, parent_id: Optional[str]) -> None:
            for agent in index.get(parent_id, ()):
                label = (
                    f"[am.role.{agent.role}]{agent.name}[/] [am.muted]{agent.role} "
                    f"{agent.provider_id}/{agent.model} {agent.id}[/]"
                )
                add(node.add(label), agent.id)

        add(tree, None)
        console.print(tree)
        return 0
    finally:
        await close_db()


def cmd_agents(args: argparse.Namespace) -> int:
    return asyncio.run(_show_agents(args))


async def _hire(args: argparse.Namespace) -> int:
    config = _load_config(args)
    await init_db(config.data_dir)
    try:
        store = ConversationStore()
        agent = await store.create_agent(
            name=args.name,
            role=args.role,
            model=args.model,
            provider_id=args.provider,
            specialty=args.specialty,
            system_prompt=args.prompt or "",
            parent_id=args.parent,
        )
        if args.parent:
            await store.create_relationship(args.parent, agent.id, "delegate")
        print_success(f"Hired {agent.name} as {agent.role} ({agent.id})")
        return 0
    except AgentMafiaError as e:
        print_error(str(e))
        return 1
    finally:
        await close_db()


def cmd_hire(args: argparse.Namespace) -> int:
    return asyncio.run(_hire(args))


# =============================================================================
# serve
# =============================================================================

def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    config = _load_config(args)
    host = args.host or config.host
    port = args.port or config.port
    print_info(f"Starting Agent Mafia API on http://{host}:{port}")
    uvicorn.run("agentmafia.web.main:app", host=host, port=port, log_config=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentmafia",
        description="Run jobs through a hierarchy of cooperating LLM agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Directory holding the agentmafia database (default: ./.agentmafia)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # run command
    run_parser = subparsers.add_parser("run", help="Run a job and follow it live")
    run_parser.add_argument("task", help="What the crew should do")
    run_parser.add_argument("--working-dir", "-w", help="Project directory the crew works in")
    run_parser.add_argument("--dynamic", action="store_true", help="Design a crew for this job first")
    run_parser.add_argument("--yes", "-y", action="store_true", help="Run a designed crew without asking")
    run_parser.add_argument("--max-turns", type=int, help="Save a new maxAgentTurns setting before running")

    # agents command
    subparsers.add_parser("agents", help="Show the standing hierarchy")

    # hire command
    hire_parser = subparsers.add_parser("hire", help="Add an agent to the standing hierarchy")
    hire_parser.add_argument("name", help="Agent name")
    hire_parser.add_argument("--role", default="soldier", choices=["underboss", "capo", "soldier"])
    hire_parser.add_argument("--parent", help="Parent agent id (a delegate edge is created too)")
    hire_parser.add_argument("--specialty", help="Specialty")
    hire_parser.add_argument("--model", help="Model id")
    hire_parser.add_argument("--provider", help="Provider id (anthropic, kimi, openai)")
    hire_parser.add_argument("--prompt", help="System prompt")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Port")

    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    commands = {
        "run": cmd_run,
        "agents": cmd_agents,
        "hire": cmd_hire,
        "serve": cmd_serve,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
