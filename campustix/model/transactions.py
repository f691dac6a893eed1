from __future__ import annotations
import uuid
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Transaction, TransactionLog, TX_PENDING
from ..helpers import now_ts, to_amount


class TransactionStore:
    """
    Append-only record of payment attempts. Status only leaves `pending`
    once; every observed notification is appended to `transaction_logs`.
    """

    def __init__(self, *, db: AsyncSession) -> None:
        self.db = db

    async def create(self, *, order_id: str, user_id: str, reference: str,
                     amount: float, currency: str,
                     payment_method: Optional[str] = None,
                     virtual_account: Optional[Dict[str, Any]] = None,
                     metadata: Optional[Dict[str, Any]] = None
                     ) -> Transaction:
        tx = Transaction(
            id=uuid.uuid4().hex,
            order_id=order_id,
            user_id=user_id,
            reference=reference,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            status=TX_PENDING,
            virtual_account=virtual_account,
            metadata_=metadata,
            initiated_at=now_ts(),
        )
        self.db.add(tx)
        await self.db.commit()
        return tx

    async def get_by_reference(self, reference: str) -> Optional[Transaction]:
        row = await self.db.execute(
            select(Transaction)
            .where(Transaction.reference == reference)
            .execution_options(populate_existing=True)
        )
        return row.scalars().first()

    async def update_by_reference(self, reference: str, status: str, *,
                                  raw_payload: Optional[Dict[str, Any]] = None,
                                  **fields: Any) -> bool:
        """
        Move the transaction out of `pending` and append the observation to
        its log. The log entry is written even if the status guard loses, so
        duplicate or late notifications stay visible.
        """
        tx = await self.get_by_reference(reference)
        if tx is None:
            return False
        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == tx.id)
            .where(Transaction.status == TX_PENDING)
            .values(status=status, **fields)
            .execution_options(synchronize_session=False)
        )
        self._add_log(tx.id, status, raw_payload)
        await self.db.commit()
        return result.rowcount == 1

    async def append_log(self, reference: str, status: Optional[str],
                         raw_payload: Optional[Dict[str, Any]]) -> bool:
        tx = await self.get_by_reference(reference)
        if tx is None:
            return False
        self._add_log(tx.id, status, raw_payload)
        await self.db.commit()
        return True

    async def logs(self, transaction_id: str) -> List[TransactionLog]:
        rows = await self.db.execute(
            select(TransactionLog)
            .where(TransactionLog.transaction_id == transaction_id)
            .order_by(TransactionLog.id.asc())
        )
        return list(rows.scalars().all())

    def _add_log(self, transaction_id: str, status: Optional[str],
                 raw_payload: Optional[Dict[str, Any]]) -> None:
        payload = raw_payload or {}
        self.db.add(TransactionLog(
            transaction_id=transaction_id,
            amount=to_amount(payload.get("amount")),
            status=payload.get("status") or status,
            received_at=now_ts(),
            raw_payload=payload,
        ))
