"""Ledger client protocol: authoritative loan and vault state."""
from typing import Any, Protocol

from ..models import LedgerAck, LoanData, Vault


class LedgerClient(Protocol):
    """Abstract interface for reading and mutating ledger state."""

    async def get_loan(self, loan_id: str) -> LoanData | None: ...

    async def get_vault(self, vault_id: str) -> Vault | None: ...

    async def liquidate(self, loan_id: str, executor: str) -> LedgerAck: ...

    async def submit_transaction(
        self, target: str, arguments: list[Any]
    ) -> LedgerAck: ...
