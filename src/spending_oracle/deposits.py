"""
Outstanding deposits per account, matched FIFO against later withdrawals.

A deposit record remembers the *original* acquisition timestamp of the funds
that went in, so acquired status survives a deposit -> withdraw round trip.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .errors import InvariantViolationError


@dataclass
class DepositRecord:
    """One input leg of a deposit into an external target."""

    account: str
    target: str
    token: str
    amount: int
    remaining_amount: int
    deposited_at: int
    original_acquisition_timestamp: int
    token_out: Optional[str] = None
    amount_out: int = 0
    remaining_output_amount: int = 0

    def to_dict(self) -> dict:
        return {
            "account": self.account,
            "target": self.target,
            "token": self.token,
            "amount": str(self.amount),
            "remaining_amount": str(self.remaining_amount),
            "deposited_at": self.deposited_at,
            "original_acquisition_timestamp": self.original_acquisition_timestamp,
            "token_out": self.token_out,
            "amount_out": str(self.amount_out),
            "remaining_output_amount": str(self.remaining_output_amount),
        }


@dataclass
class ReceiptBurn:
    """Receipt tokens released by a matched withdrawal."""

    token: str
    amount: int


@dataclass
class DepositMatch:
    """Result of matching one withdrawn amount against deposit records."""

    requested: int
    matched: int = 0
    oldest_original_timestamp: Optional[int] = None
    receipt_burns: list[ReceiptBurn] = field(default_factory=list)

    @property
    def unmatched(self) -> int:
        return self.requested - self.matched


class DepositLedger:
    """Deposit records for one account, in creation (chronological) order."""

    def __init__(self, account: str):
        self.account = account
        self.records: list[DepositRecord] = []

    def __len__(self) -> int:
        return len(self.records)

    def record(
        self,
        target: str,
        token: str,
        amount: int,
        deposited_at: int,
        original_acquisition_timestamp: int,
        token_out: Optional[str] = None,
        amount_out: int = 0,
    ) -> Optional[DepositRecord]:
        if amount <= 0:
            return None
        if original_acquisition_timestamp > deposited_at:
            raise InvariantViolationError(
                f"Deposit funded by entries acquired after the deposit "
                f"({original_acquisition_timestamp} > {deposited_at})",
                account=self.account,
            )
        record = DepositRecord(
            account=self.account,
            target=target,
            token=token,
            amount=amount,
            remaining_amount=amount,
            deposited_at=deposited_at,
            original_acquisition_timestamp=original_acquisition_timestamp,
            token_out=token_out if amount_out > 0 else None,
            amount_out=amount_out if token_out else 0,
            remaining_output_amount=amount_out if token_out else 0,
        )
        self.records.append(record)
        return record

    def match(self, target: str, token: str, amount: int) -> DepositMatch:
        """Consume outstanding deposits at ``target`` in ``token``, oldest first."""
        result = DepositMatch(requested=amount)
        remaining = amount

        for record in self.records:
            if remaining <= 0:
                break
            if record.target != target or record.token != token or record.remaining_amount <= 0:
                continue

            take = min(remaining, record.remaining_amount)
            record.remaining_amount -= take
            remaining -= take
            result.matched += take

            if (
                result.oldest_original_timestamp is None
                or record.original_acquisition_timestamp < result.oldest_original_timestamp
            ):
                result.oldest_original_timestamp = record.original_acquisition_timestamp

            if record.token_out and record.remaining_output_amount > 0:
                burn = min(record.amount_out * take // record.amount, record.remaining_output_amount)
                if burn > 0:
                    record.remaining_output_amount -= burn
                    result.receipt_burns.append(ReceiptBurn(record.token_out, burn))

        self.check_invariants()
        if result.matched > amount:
            raise InvariantViolationError(
                f"Matched {result.matched} but only {amount} was withdrawn",
                account=self.account,
            )
        return result

    def has_position(self, target: str) -> bool:
        return any(r.target == target for r in self.records)

    def oldest_original_timestamp(self, target: str) -> Optional[int]:
        stamps = [r.original_acquisition_timestamp for r in self.records if r.target == target]
        return min(stamps) if stamps else None

    def check_invariants(self) -> None:
        for record in self.records:
            if record.remaining_amount < 0 or record.remaining_amount > record.amount:
                raise InvariantViolationError(
                    f"Deposit at {record.target} in {record.token} has remaining "
                    f"{record.remaining_amount} of {record.amount}",
                    account=self.account,
                )
            if record.remaining_output_amount < 0 or record.remaining_output_amount > record.amount_out:
                raise InvariantViolationError(
                    f"Deposit receipt {record.token_out} has remaining "
                    f"{record.remaining_output_amount} of {record.amount_out}",
                    account=self.account,
                )
