# [Core: Worker Executor]
"""
Worker Executor and its processing stages.

  - json_repair: parse chain and truncation recovery
  - field_wrapper: confidence-tagged field wrapping and tkr normalisation
  - validator: lenient validation and cross-field reconciliation
  - worker: one specialist call through the gateway

Import rules:
  - May import from brf_extract.services, brf_extract.models, brf_extract.config
  - May import brf_extract.agent.workers (registry data only)
"""
