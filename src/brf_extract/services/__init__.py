# [Core: Dispatch Gateway]
"""
Dispatch Gateway and the external collaborators it depends on.

  - gateway: billed, retried, safety-bounded dispatch of one logical call
  - inference: single-attempt transport to the OpenAI-compatible endpoint
  - credentials / pricing / ledger / notifier: collaborator interfaces
    plus in-memory implementations
  - errors: error kinds and their stable codes

Import rules:
  - May import from brf_extract.models and brf_extract.config
  - May NOT import from brf_extract.tools or brf_extract.agent
"""
