# [Core: Parallel Orchestrator]
"""
Routing and orchestration of specialist workers.

  - workers: worker registry and prompt library
  - router: section-to-worker routing (title matching, semantic)
  - orchestrator: concurrent fan-out, merge, run metadata
  - linkage: identifiers tying a run back to its cooperative
"""
