"""Agent Orchestrator: decides when a chatbot message needs tools, and runs them.

Architecture Overview
=====================

Every inbound message goes through three stages:

1. **Decision engine**: a cheap keyword/pattern scan (plus an optional
   small-model reminder classifier) scores how likely the message needs a
   tool.  Low scores take the fast path: one conversational model call,
   streamed.  Scores are cached for five minutes.

2. **ReAct executor**: a LangGraph StateGraph looping think → act →
   observe until the task completes, the iteration budget or deadline runs
   out, or the model's confidence drops below 0.3.  Step decisions are JSON;
   unparsable replies fall back to keyword rules.

3. **Tool registry**: an immutable, plan-gated catalog (Stripe payment
   links, reminders, contact capture, analytics).  Dispatch never raises;
   failures come back as ``ToolResult(success=False)``.

Telemetry (``PerformanceMonitor`` + CloudWatch ``MetricsClient``) observes
every request without influencing any decision.

Key Design Decisions
--------------------
- **Expected conditions are values**: unknown tools, plan gating, model
  failures and parse errors travel as typed results, not exceptions.
- **Retry is explicit**: every network call runs under a ``RetryPolicy``
  that retries only transient failures (timeouts, 429, 5xx); LLM SDK
  retries are disabled so backoff is not compounded.
- **Idempotent side effects**: Stripe requests carry deterministic
  ``Idempotency-Key`` headers; scheduling the same reminder twice returns
  the existing one.
- **Dual Interface**: FastAPI server with SSE streaming (production) + CLI
  chat loop (development).

Package Structure
-----------------
- ``orchestrator/chat.py``: top-level wiring (``ChatOrchestrator``)
- ``orchestrator/agent.py``: LangGraph ReAct executor
- ``orchestrator/reasoning.py``: step-decision parsing, fallbacks, budgets
- ``orchestrator/keywords.py``: keyword families shared by engine and executor
- ``orchestrator/models.py``: value types
- ``orchestrator/config.py``: configuration from environment / SSM
- ``orchestrator/prompts.py``: prompts and user-facing copy (Spanish)
- ``orchestrator/services/``: decision engine, LLM provider, retry, cache,
  Stripe client, telemetry, metrics, collaborator protocols
- ``orchestrator/tools/``: tool registry and tool families
- ``orchestrator/api/``: FastAPI routes and Pydantic schemas
"""
