"""
Delegate — subagent execution engine.

Hands units of work to independently running agent processes, each with an
isolated context, and reassembles their streamed output, token accounting and
failure signals into results the caller can act on.

Layers (bottom to top):
    1. Worker pool (bounded concurrency, ordered results)
    2. Subprocess runner (launch, NDJSON protocol, watchdog, termination)
    3. Model fallback (retry on quota/auth/capacity failures)
    4. Stall rescue (one narrowed retry for stuck parallel workers)
    5. Background registry (detached runs and status queries)
    6. Orchestrator (single / parallel / centipede dispatch)
"""

__version__ = "0.1.0"
