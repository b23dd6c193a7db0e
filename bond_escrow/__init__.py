"""
Bond Escrow — Notary-gated rental bond escrow on the XRP Ledger.

Architecture: ConditionCodec → PayloadBuilder → LeaseStateMachine → SettlementCoordinator
Philosophy:  The ledger holds the money. Only the notary's verdict releases the secret.
"""

__version__ = "1.0.0"
