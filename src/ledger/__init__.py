"""Execution ledger for rule runs."""

from ledger.ledger import ExecutionLedger, ExecutionRecord, RuleStats

__all__ = ["ExecutionLedger", "ExecutionRecord", "RuleStats"]
