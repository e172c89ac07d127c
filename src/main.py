"""CLI entry point for the lead-conversion agent.

Operational commands for cron hosts and local debugging.  For production
traffic use the FastAPI server (src/server.py).

Usage:
    uv run python -m src.main sweep-reminders          # send due booking reminders
    uv run python -m src.main follow-ups               # lead nudges + no-show sweep
    uv run python -m src.main prompt ORG_ID LEAD_ID    # print the system prompt
    uv run python -m src.main chat ORG_ID LEAD_ID      # talk to the agent, then print session costs
    uv run python -m src.main --debug ...              # debug logging
"""

from __future__ import annotations

import argparse
import json
import logging

from dotenv import load_dotenv

from src.agent import LeadAgent, create_lead_agent
from src.errors import LeadAgentError
from src.services.cost_ledger import recommendations

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("twilio").setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_cost_report(agent: LeadAgent) -> None:
    """LLM spend of this process; the ledger is not persisted."""
    report = agent.ledger.report()
    print(json.dumps(report.model_dump(), indent=2))
    for hint in recommendations(report):
        print(f"- {hint}")


def _chat(agent: LeadAgent, organization_id: str, lead_id: str) -> None:
    lead = agent.assembler.get_lead(organization_id, lead_id)
    print("\n" + "=" * 60)
    print(f"  Chatting as {lead.name} ({lead.phone})")
    print("=" * 60)
    print("  Type a message and press Enter. 'quit' to exit.")
    print("=" * 60 + "\n")

    while True:
        try:
            user_input = input(f"{lead.name}: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue
        if user_input.lower() in ("exit", "quit", "q"):
            break

        result = agent.reply_to_lead(organization_id, lead_id, user_input)
        print(f"\nAgent: {result.reply}")
        print(f"       [actions={result.suggested_actions} cost=${result.estimated_cost:.6f}]\n")

    _print_cost_report(agent)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Lead conversion agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("sweep-reminders", help="Send every reminder that is due")
    commands.add_parser("follow-ups", help="Nudge quiet leads and handle no-shows")

    prompt = commands.add_parser("prompt", help="Render the system prompt for a lead")
    prompt.add_argument("organization_id")
    prompt.add_argument("lead_id")
    prompt.add_argument("--variant", choices=["full", "optimized"], default="optimized")

    chat = commands.add_parser("chat", help="Talk to the agent as a lead")
    chat.add_argument("organization_id")
    chat.add_argument("lead_id")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    load_dotenv()
    _configure_logging(debug=args.debug)

    agent = create_lead_agent()
    try:
        if args.command == "sweep-reminders":
            result = agent.reminders.process_due_reminders()
            print(json.dumps(result.model_dump()))
        elif args.command == "follow-ups":
            result = agent.follow_ups.run()
            print(json.dumps(result.model_dump()))
        elif args.command == "prompt":
            rendered = agent.prompt_preview(args.organization_id, args.lead_id)[args.variant]
            print(rendered.text)
            print(f"\n--- {len(rendered.text)} chars, ~{rendered.estimated_tokens} tokens ---")
            for warning in rendered.warnings:
                print(f"WARNING: {warning}")
        elif args.command == "chat":
            _chat(agent, args.organization_id, args.lead_id)
    except LeadAgentError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
