"""
Fixed-rate currency conversion.

Rates come from config.ExchangeRates; there are no live FX lookups. With
`strict=True` (the default) an unlisted pair raises UnknownCurrencyPairError.
With `strict=False` the amount passes through unchanged and a warning is
logged once per pair.
"""

from __future__ import annotations

import logging
from typing import Optional, Set, Tuple, Union

from dti_quant.config import Currency, ExchangeRates
from dti_quant.exceptions import UnknownCurrencyPairError

logger = logging.getLogger(__name__)

CurrencyLike = Union[Currency, str]


def _coerce(currency: CurrencyLike) -> Currency:
    if isinstance(currency, Currency):
        return currency
    try:
        return Currency(str(currency).upper())
    except ValueError:
        raise UnknownCurrencyPairError(str(currency), str(currency)) from None


class CurrencyConverter:
    """Convert amounts between INR, GBP, and USD with a static rate table."""

    def __init__(self, rates: Optional[ExchangeRates] = None, strict: Optional[bool] = None):
        self.rates = rates or ExchangeRates()
        self.strict = self.rates.strict if strict is None else strict
        self._warned: Set[Tuple[Currency, Currency]] = set()

    def rate(self, source: CurrencyLike, target: CurrencyLike) -> float:
        """Rate that multiplies an amount in `source` into `target`."""
        src, dst = _coerce(source), _coerce(target)
        if src == dst:
            return 1.0

        rate = self.rates.rates.get((src, dst))
        if rate is not None:
            return rate

        if self.strict:
            raise UnknownCurrencyPairError(src.value, dst.value)

        if (src, dst) not in self._warned:
            logger.warning(f"No FX rate for {src.value}->{dst.value}; passing amount through unchanged")
            self._warned.add((src, dst))
        return 1.0

    def convert(self, amount: float, source: CurrencyLike, target: CurrencyLike) -> float:
        """Convert `amount` from `source` to `target`."""
        return amount * self.rate(source, target)
