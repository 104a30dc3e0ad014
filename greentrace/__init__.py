# -*- coding: utf-8 -*-
"""
GreenTrace: supply-chain lineage and custody ledger
====================================================

- traceability: lineage traversal with compliance risk aggregation, and
  custody chains with split/merge/transform mass-balance accounting
- exceptions: GreenTraceException hierarchy
- cli: ``gt`` command line interface
"""

__version__ = "0.1.0"
