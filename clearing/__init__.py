"""
Attested clearing and honoring pipeline.

Claims are attested, verified and cleared on an authoritative ledger;
cleared obligations are then honored by external providers. The ledger
is the only source of truth; the narrative mirror only observes.
"""

__version__ = "0.1.0"
