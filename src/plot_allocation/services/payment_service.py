from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Mapping, Optional
from uuid import uuid4

from pydantic import BaseModel

from ..db.base import BaseDBManager
from ..errors import (
    InvalidTransactionState,
    NotFound,
    PaymentAmountMismatch,
    PaymentNotCompleted,
    ValidationError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.idempotency import IdempotencyRecord
from ..models.transaction import Transaction, TransactionStatus, TransactionType


_OUTCOMES = {
    "succeeded": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "canceled": TransactionStatus.FAILED,
}


def _intent_record_key(idempotency_key: str) -> str:
    return f"intent:{idempotency_key}"


class ChargeResult(BaseModel):
    success: bool
    reference: str
    error: Optional[str] = None


class PaymentGateway(ABC):
    """Synchronous charge interface; a real processor plugs in here."""

    name: str = "gateway"

    @abstractmethod
    async def charge(self, amount: int, method: str, details: Mapping[str, str]) -> ChargeResult:
        ...


class SimulatedGateway(PaymentGateway):
    """
    Stand-in processor with deterministic outcomes:
    cards are declined when the number is shorter than 4 characters or ends
    in 0000, wallets when the address is shorter than 10 characters.
    """

    name = "simulated"

    async def charge(self, amount: int, method: str, details: Mapping[str, str]) -> ChargeResult:
        reference = f"ch_{uuid4().hex[:16]}"
        if method == "card":
            number = details.get("card_number", "")
            if len(number) < 4 or number.endswith("0000"):
                return ChargeResult(success=False, reference=reference, error="card declined")
        elif method == "crypto":
            if len(details.get("wallet_address", "")) < 10:
                return ChargeResult(success=False, reference=reference, error="invalid wallet address")
        else:
            return ChargeResult(success=False, reference=reference, error=f"unsupported method {method}")
        return ChargeResult(success=True, reference=reference)


class PaymentIntent(BaseModel):
    intent_id: str
    client_secret: str
    transaction: Transaction


class PaymentService:
    """
    Payment verification shim: pending intents confirmed later, and a
    synchronous "charge now" path through a pluggable gateway.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        gateway: Optional[PaymentGateway] = None,
        currency: str = "USD",
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._gateway = gateway or SimulatedGateway()
        self._currency = currency

    async def create_intent(
        self,
        user_id: str,
        amount: int,
        tx_type: TransactionType = TransactionType.PLOT_PURCHASE,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Open a pending intent for `amount`.

        With an idempotency key an earlier intent is returned unchanged,
        whatever `amount` this call asked for; callers read the amount owed
        from `intent.transaction`.
        """
        if amount <= 0:
            raise ValidationError("amount must be positive", details={"amount": amount})

        async with self._db.transaction():
            if idempotency_key:
                replayed = await self.replay_intent(idempotency_key, user_id)
                if replayed is not None:
                    return replayed

            intent_id = f"pi_{uuid4().hex}"
            client_secret = f"{intent_id}_secret_{secrets.token_urlsafe(12)}"
            tx = Transaction(
                transaction_id=intent_id,
                user_id=user_id,
                amount=amount,
                currency=self._currency,
                type=tx_type,
                status=TransactionStatus.PENDING,
                payment_processor="stripe",
                metadata=dict(metadata or {}),
            )
            tx = await self._db.add_transaction(tx)

            if idempotency_key:
                await self._db.add_idempotency_record(
                    IdempotencyRecord(
                        key=_intent_record_key(idempotency_key),
                        user_id=user_id,
                        operation="create_intent",
                        response={"intent_id": intent_id, "client_secret": client_secret},
                    )
                )

        await self._ledger.log_payment(
            user_id=user_id,
            message="Payment intent created",
            details={"intent_id": intent_id, "amount": amount, "type": tx_type.value},
            correlation_id=correlation_id,
        )
        return PaymentIntent(intent_id=intent_id, client_secret=client_secret, transaction=tx)

    async def replay_intent(self, idempotency_key: str, user_id: str) -> Optional[PaymentIntent]:
        """The intent an earlier request stored under `idempotency_key`, if any."""
        record = await self._db.get_idempotency_record(_intent_record_key(idempotency_key))
        if record is None:
            return None
        if record.user_id != user_id:
            raise ValidationError("idempotency key belongs to another user", details={"key": record.key})
        intent_id = record.response["intent_id"]
        tx = await self._db.get_transaction_by_external_id(intent_id)
        if tx is None:
            raise NotFound("payment intent not found", details={"intent_id": intent_id})
        return PaymentIntent(
            intent_id=intent_id, client_secret=record.response["client_secret"], transaction=tx
        )

    async def confirm(
        self, intent_id: str, outcome: str, correlation_id: Optional[str] = None
    ) -> Transaction:
        target = _OUTCOMES.get(outcome)
        if target is None:
            raise ValidationError(
                "unknown payment outcome", details={"status": outcome, "allowed": sorted(_OUTCOMES)}
            )

        async with self._db.transaction():
            tx = await self.get_by_intent(intent_id)
            if tx.status == target:
                return tx
            if tx.status != TransactionStatus.PENDING:
                raise InvalidTransactionState(
                    "payment intent already settled",
                    details={"intent_id": intent_id, "status": tx.status.value},
                )

            tx.status = target
            tx = await self._db.update_transaction(tx)

        await self._ledger.log_payment(
            user_id=tx.user_id,
            message="Payment confirmed" if target == TransactionStatus.COMPLETED else "Payment failed",
            details={"intent_id": intent_id, "amount": tx.amount, "status": target.value},
            correlation_id=correlation_id,
        )
        return tx

    async def process_now(
        self,
        user_id: str,
        amount: int,
        method: str,
        details: Mapping[str, str],
        tx_type: TransactionType = TransactionType.PLOT_PURCHASE,
        description: str = "",
        correlation_id: Optional[str] = None,
    ) -> Transaction:
        """
        Charge synchronously and record the outcome as a settled transaction.

        A declined charge is not an exception: the failed transaction is
        returned so the caller can show the gateway's reason.
        """
        if amount <= 0:
            raise ValidationError("amount must be positive", details={"amount": amount})
        if method not in ("card", "crypto"):
            raise ValidationError("payment method must be card or crypto", details={"method": method})

        result = await self._gateway.charge(amount, method, details)

        metadata: Dict[str, Any] = {"description": description, "method": method}
        if method == "card":
            # Only the last four digits are ever stored
            metadata["card_last4"] = details.get("card_number", "")[-4:]
            metadata["card_holder"] = details.get("card_holder", "")
        else:
            metadata["wallet_address"] = details.get("wallet_address", "")
        if result.error:
            metadata["error"] = result.error

        tx = Transaction(
            transaction_id=result.reference,
            user_id=user_id,
            amount=amount,
            currency=self._currency,
            type=tx_type,
            status=TransactionStatus.COMPLETED if result.success else TransactionStatus.FAILED,
            payment_processor=f"{self._gateway.name}_{method}",
            metadata=metadata,
        )
        async with self._db.transaction():
            tx = await self._db.add_transaction(tx)
        if result.success:
            await self._ledger.log_payment(
                user_id=user_id,
                message="Payment processed",
                details={"payment_id": tx.transaction_id, "amount": amount, "method": method},
                correlation_id=correlation_id,
            )
        else:
            await self._ledger.log_error(
                message="Payment declined",
                details={"payment_id": tx.transaction_id, "amount": amount, "error": result.error},
                user_id=user_id,
                correlation_id=correlation_id,
            )
        return tx

    async def require_completed(
        self,
        intent_id: str,
        user_id: str,
        amount: int,
        tx_type: TransactionType,
    ) -> Transaction:
        """
        Return the intent's transaction if it can pay for `amount`, else raise.

        The transaction must be completed, owned by `user_id`, of `tx_type`,
        for exactly `amount`, and not already consumed by another purchase.
        """
        tx = await self._db.get_transaction_by_external_id(intent_id)
        if tx is None or tx.status != TransactionStatus.COMPLETED:
            raise PaymentNotCompleted(
                "payment not completed",
                details={"intent_id": intent_id, "status": tx.status.value if tx else None},
            )
        if tx.user_id != user_id or tx.type != tx_type:
            raise ValidationError(
                "payment intent does not match this purchase",
                details={"intent_id": intent_id},
            )
        if tx.plot_id is not None or tx.metadata.get("consumed"):
            raise ValidationError("payment intent already used", details={"intent_id": intent_id})
        if tx.amount != amount:
            raise PaymentAmountMismatch(
                "payment amount mismatch",
                details={"intent_id": intent_id, "paid": tx.amount, "expected": amount},
            )
        return tx

    async def get_by_intent(self, intent_id: str) -> Transaction:
        tx = await self._db.get_transaction_by_external_id(intent_id)
        if tx is None:
            raise NotFound("transaction not found", details={"intent_id": intent_id})
        return tx

    async def history(self, user_id: str, limit: int = 20) -> Iterable[Transaction]:
        return await self._db.get_transactions(user_id, limit=limit)
