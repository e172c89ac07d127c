"""Lead Conversion Agent — a WhatsApp sales agent for small businesses.

Architecture Overview
=====================

Leads arrive from Facebook Lead Ads or GoHighLevel webhooks and are greeted
over WhatsApp.  Every inbound reply runs through a **LangGraph** pipeline:

1. **assemble_context** — lead, organization, the last 10 messages, active
   training data, relevant knowledge entries and up to 20 call transcripts
   ranked positive → neutral → negative.
2. **build_prompt** — a cost-optimized system prompt capped so one exchange
   stays under the per-call cost ceiling.
3. **complete** — one Claude Haiku call; the reply is classified for
   booking intent and lead qualification.
4. **book** — when booking intent meets an explicit day and time, check
   Google Calendar, create the event with a Meet link, persist the booking
   and queue three WhatsApp reminders.

Key Design Decisions
--------------------
- **Store**: Supabase over its PostgREST interface (``httpx``); an in-memory
  store with the same surface backs local development and the tests.
- **Cost ledger**: an injected ``CostLedger`` records every LLM call,
  success or failure, and feeds the cost-monitor endpoint.
- **No background scheduler**: reminder and follow-up sweeps are driven by
  an external cron hitting ``/api/cron/*`` or the CLI.
- **Failures**: provider errors during a reply become an apology to the
  lead and an error log; they never bubble back to Twilio.

Package Structure
-----------------
- ``src/agent.py`` — LangGraph pipeline, ``LeadAgent`` facade and factory
- ``src/config.py`` — Centralized configuration from env / SSM
- ``src/errors.py`` — Exception taxonomy
- ``src/models.py`` — Validated store records and the conversation context
- ``src/prompts.py`` — Full and cost-optimized system prompts
- ``src/server.py`` — FastAPI application
- ``src/main.py`` — Operational CLI
- ``src/services/`` — Store, providers (Claude, Twilio, Google Calendar) and
  the booking / reminder / follow-up workflows
- ``src/api/`` — FastAPI routes and Pydantic schemas
"""
