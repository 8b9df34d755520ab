"""Portfolio duel client — commit-reveal match orchestration against a ledger."""

__version__ = "0.4.0"
