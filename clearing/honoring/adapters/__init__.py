"""Concrete honoring adapters, one per external provider."""

from .arcus import ArcusBillPayAdapter, Biller
from .moov import MoovCashOutAdapter
from .tango import TangoGiftCardAdapter

__all__ = [
    "ArcusBillPayAdapter",
    "Biller",
    "MoovCashOutAdapter",
    "TangoGiftCardAdapter",
]
