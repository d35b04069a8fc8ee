"""
Exception hierarchy for the DTI signal and portfolio simulation toolkit.

Only caller bugs raise. Degenerate numeric states (flat prices, no losing
days, zero drawdown) resolve to sentinel values inside the calculators, and
per-symbol data problems are logged and recorded as skips by the pipeline.
"""

from __future__ import annotations


class DTIQuantError(Exception):
    """Base class for all errors raised by dti_quant."""


class InvalidSeriesError(DTIQuantError, ValueError):
    """Raised when indicator inputs are empty, misaligned, or use non-positive periods."""


class ConfigurationError(DTIQuantError, ValueError):
    """Raised when a SimulationConfig cannot drive a run."""


class UnknownCurrencyPairError(DTIQuantError, ValueError):
    """Raised by strict conversion when no rate exists for a currency pair."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"No exchange rate configured for {source} -> {target}")
