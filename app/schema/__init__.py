"""Schema package exports."""

from .credits import CreditBalance, CreditReservation, CreditTransaction, GenerationLedgerEntry

__all__ = ["CreditBalance", "CreditReservation", "CreditTransaction", "GenerationLedgerEntry"]
