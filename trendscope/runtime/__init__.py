"""Runtime orchestration (sweeps, job execution, dispatch).

This layer is responsible for:
- fanning due prompts out into queued jobs (scheduler)
- claiming and executing one job at a time (executor)
- rolling job outcomes up into run counters (aggregator)
- delivering job ids to executors with retry (dispatcher)

It should remain independent from the HTTP layer (`trendscope.api`), so both CLI
and API can reuse the same execution logic.
"""
