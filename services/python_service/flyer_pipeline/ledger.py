"""Per-user credit ledger.

The balance is never stored; it is always the sum of a user's transactions.
Every debit goes through ``LedgerStore.append_if_covered`` so that the
check-balance-then-append step is a single atomic operation and the balance
can never go negative, however many requests for the same user settle at once.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from . import config
from .errors import InsufficientCredits, InvalidRequest
from .models import CreditTransaction, TransactionType

logger = logging.getLogger(__name__)


class LedgerStore:
    """Storage seam for transactions. Implementations must make
    ``append_if_covered`` atomic per user."""

    async def transactions(self, user_id: str) -> List[CreditTransaction]:
        raise NotImplementedError

    async def append(self, entry: CreditTransaction) -> None:
        raise NotImplementedError

    async def append_if_covered(self, user_id: str, entries: Sequence[CreditTransaction], floor: int = 0) -> bool:
        """Append all entries iff the resulting balance stays >= floor. Returns whether they were appended."""
        raise NotImplementedError


class InMemoryLedgerStore(LedgerStore):
    def __init__(self):
        self._entries: Dict[str, List[CreditTransaction]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def transactions(self, user_id: str) -> List[CreditTransaction]:
        return list(self._entries.get(user_id, []))

    async def append(self, entry: CreditTransaction) -> None:
        async with self._lock:
            self._entries[entry.user_id].append(entry)

    async def append_if_covered(self, user_id: str, entries: Sequence[CreditTransaction], floor: int = 0) -> bool:
        async with self._lock:
            current = sum(t.amount for t in self._entries.get(user_id, []))
            if current + sum(e.amount for e in entries) < max(0, floor):
                return False
            self._entries[user_id].extend(entries)
            return True


def fold_balance(transactions: Sequence[CreditTransaction]) -> int:
    return sum(t.amount for t in transactions)


class CreditLedger:
    def __init__(self, store: Optional[LedgerStore] = None, *, initial_credits: Optional[int] = None):
        self.store = store or InMemoryLedgerStore()
        self.initial_credits = config.INITIAL_CREDITS if initial_credits is None else initial_credits
        self._accounts_lock = asyncio.Lock()

    async def ensure_account(self, user_id: str) -> None:
        async with self._accounts_lock:
            if await self.store.transactions(user_id):
                return
            await self.store.append(CreditTransaction(
                user_id=user_id,
                amount=self.initial_credits,
                type=TransactionType.INITIAL,
                description="Initial credits",
            ))
            logger.info(f"ledger: opened account {user_id} with {self.initial_credits} credits")

    async def balance(self, user_id: str) -> int:
        await self.ensure_account(user_id)
        return fold_balance(await self.store.transactions(user_id))

    async def history(self, user_id: str) -> List[CreditTransaction]:
        await self.ensure_account(user_id)
        # Store order is append order
        return list(reversed(await self.store.transactions(user_id)))

    async def preflight(self, user_id: str, per_variant_cost: int) -> int:
        """Reject up front when the user cannot pay for even one variant. Returns the balance."""
        balance = await self.balance(user_id)
        if balance < per_variant_cost:
            raise InsufficientCredits(
                "Insufficient credits",
                balance=balance,
                required=per_variant_cost,
            )
        return balance

    async def charge(self, user_id: str, per_variant_cost: int, succeeded_count: int,
                     description: str = "Design generation") -> List[CreditTransaction]:
        """Debit one transaction per succeeded variant, as many as the balance covers.

        Raises InsufficientCredits when not even one variant can be paid for.
        """
        if succeeded_count <= 0:
            return []
        await self.ensure_account(user_id)
        if per_variant_cost <= 0:
            return []
        count = succeeded_count
        while count > 0:
            entries = [
                CreditTransaction(
                    user_id=user_id,
                    amount=-per_variant_cost,
                    type=TransactionType.SUBTRACT,
                    description=f"{description} ({i + 1}/{succeeded_count})",
                )
                for i in range(count)
            ]
            if await self.store.append_if_covered(user_id, entries):
                if count < succeeded_count:
                    logger.warning(
                        f"ledger: {user_id} could cover only {count}/{succeeded_count} variants at settlement"
                    )
                logger.info(f"ledger: charged {user_id} {count * per_variant_cost} credits for {count} variants")
                return entries
            count -= 1
        balance = await self.balance(user_id)
        raise InsufficientCredits("Insufficient credits", balance=balance, required=per_variant_cost)

    async def debit(self, user_id: str, amount: int, description: str, *, keep: int = 0) -> CreditTransaction:
        """Subtract amount atomically, refusing when less than ``keep`` credits would remain."""
        await self.ensure_account(user_id)
        entry = CreditTransaction(
            user_id=user_id, amount=-abs(amount), type=TransactionType.SUBTRACT, description=description,
        )
        if not await self.store.append_if_covered(user_id, [entry], floor=keep):
            balance = await self.balance(user_id)
            raise InsufficientCredits("Insufficient credits", balance=balance, required=abs(amount) + max(0, keep))
        logger.info(f"ledger: debited {user_id} {abs(amount)} credits ({description})")
        return entry

    async def add(self, user_id: str, amount: int, description: str = "Credits added") -> CreditTransaction:
        if amount <= 0:
            raise InvalidRequest("Amount must be a positive integer")
        await self.ensure_account(user_id)
        entry = CreditTransaction(user_id=user_id, amount=amount, type=TransactionType.ADD, description=description)
        await self.store.append(entry)
        logger.info(f"ledger: added {amount} credits to {user_id}")
        return entry
