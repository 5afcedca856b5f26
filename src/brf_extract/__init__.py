"""
BRF extraction gateway.

Cost-aware dispatch of extraction calls to a metered inference service,
and a multi-worker orchestrator that extracts confidence-tagged fields
from Swedish housing-cooperative (BRF) annual reports.
"""

__version__ = "0.1.0"
