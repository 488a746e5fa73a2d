"""CLI entry point for the agent orchestrator.

A terminal chat for trying tenants, plans and tools locally.  For
production, use the FastAPI server (orchestrator/server.py).

Usage:
    python -m orchestrator.main                       # TRIAL tenant, quiet
    python -m orchestrator.main --plan FREE           # see plan gating
    python -m orchestrator.main --tenant acme --debug # show decisions and API calls
"""

from __future__ import annotations

import argparse
import logging
import uuid

from dotenv import load_dotenv

from orchestrator.chat import ChatTurn, create_chat_orchestrator
from orchestrator.models import PlanTier

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("orchestrator").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Agent orchestrator CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including decisions and HTTP requests",
    )
    parser.add_argument(
        "--plan", type=str.upper, choices=[p.value for p in PlanTier], default=None,
        help="Plan to chat as (defaults to the tenant's plan on record)",
    )
    parser.add_argument("--tenant", default="local", help="Tenant id to chat as")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    orchestrator = create_chat_orchestrator()
    plan = args.plan or orchestrator.tenants.get_plan(args.tenant).value

    print("\n" + "=" * 60)
    print("  Agent Orchestrator - CLI Chat")
    print(f"  Tenant: {args.tenant}   Plan: {plan}")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session, 'stats' for telemetry.")
    print("=" * 60 + "\n")

    session_id = str(uuid.uuid4())
    logger.info("Started new session: %s", session_id)

    while True:
        try:
            user_input = input("Tú: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\n¡Hasta luego!")
            break

        if not user_input:
            continue

        command = user_input.lower()
        if command in ("exit", "quit", "q"):
            print("\n¡Hasta luego!")
            break

        if command == "new":
            session_id = str(uuid.uuid4())
            print(f"\n>> New session started: {session_id[:8]}...\n")
            continue

        if command == "stats":
            print(f"\n{orchestrator.monitor.aggregated_stats()}")
            print(f"{orchestrator.engine.stats()}\n")
            continue

        try:
            reply = orchestrator.handle(ChatTurn(
                message=user_input,
                session_id=session_id,
                tenant_id=args.tenant,
                chatbot_id=f"{args.tenant}-cli",
                plan=args.plan,
            ))
            tools = f"  [tools: {', '.join(reply.tools_used)}]" if reply.tools_used else ""
            print(f"\nAsistente: {reply.content}{tools}\n")

        except KeyboardInterrupt:
            print("\n\n¡Hasta luego!")
            break
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nAsistente: Algo salió mal: {e}")
            print("     Intenta de nuevo o escribe 'new' para empezar otra sesión.\n")


if __name__ == "__main__":
    main()
