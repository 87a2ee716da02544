"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface for:
- the cron-triggered sweep and the per-job trigger endpoint
- job status queries, replay and run reconciliation
- read-only views of prompts, entities and per-day analytics

Core behavior lives in `trendscope.runtime` and
`trendscope.storage`.
"""
