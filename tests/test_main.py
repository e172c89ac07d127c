"""Tests for the command-line entry point."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from src.agent import AgentReply
from src.errors import NotFoundError
from src.main import build_parser, main
from src.models import Lead
from src.services.cost_ledger import CostLedger
from src.services.reminders import SweepResult


@pytest.fixture
def mock_agent():
    agent = MagicMock()
    agent.ledger = CostLedger()
    agent.assembler.get_lead.return_value = Lead(
        id="lead-jane", organization_id="org-1", name="Jane Doe", phone="+15551234567",
    )

    def _reply(organization_id, lead_id, message):
        entry = agent.ledger.record(800, 40, "conv-1")
        return AgentReply(
            reply="Hi Jane!", conversation_id="conv-1", estimated_cost=entry.estimated_cost,
        )

    agent.reply_to_lead.side_effect = _reply
    with patch("src.main.create_lead_agent", return_value=agent):
        yield agent


class TestParser:
    def test_known_commands(self):
        args = build_parser().parse_args(["prompt", "org-1", "lead-jane", "--variant", "full"])
        assert (args.command, args.variant) == ("prompt", "full")

    def test_standalone_cost_report_is_not_a_command(self):
        # A fresh process has an empty ledger; costs are reported at the end of `chat`
        with pytest.raises(SystemExit):
            build_parser().parse_args(["cost-report"])


class TestMain:
    def test_sweep_reminders_prints_result(self, mock_agent, capsys):
        mock_agent.reminders.process_due_reminders.return_value = SweepResult(processed=2, sent=2)
        assert main(["sweep-reminders"]) == 0
        assert json.loads(capsys.readouterr().out)["sent"] == 2

    def test_chat_reports_costs_of_the_session(self, mock_agent, capsys):
        with patch("builtins.input", side_effect=["Hello", "quit"]):
            assert main(["chat", "org-1", "lead-jane"]) == 0

        out = capsys.readouterr().out
        assert "Agent: Hi Jane!" in out
        assert '"total_calls": 1' in out
        mock_agent.reply_to_lead.assert_called_once_with("org-1", "lead-jane", "Hello")

    def test_agent_errors_exit_nonzero(self, mock_agent):
        mock_agent.assembler.get_lead.side_effect = NotFoundError("lead", "nobody")
        assert main(["chat", "org-1", "nobody"]) == 1
