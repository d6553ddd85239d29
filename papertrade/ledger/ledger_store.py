"""Ledger store - persisted cash, buying power and equity per account.

Every mutation writes through to the persistence adapter immediately. Reads
go to the adapter as well, so the store itself holds no per-account state
that could drift from what is persisted.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from papertrade.core.config import LedgerConfig, ledger_config
from papertrade.core.context import AccountContext
from papertrade.core.errors import InsufficientFundsError, ValidationError
from papertrade.core.models import (
    AccountBalance,
    WalletTransaction,
    WalletTransactionType,
    to_decimal,
)
from papertrade.storage.persistence import PersistenceAdapter

ACCOUNT_NAMESPACE = "account"
WALLET_NAMESPACE = "wallet"

# Derived trading state cleared by a fresh start
TRADING_NAMESPACES = ("positions", "closed_positions", "trades", "rejections")


class LedgerStore:
    """Cash ledger keyed by account identity."""

    def __init__(self, persistence: PersistenceAdapter, config: Optional[LedgerConfig] = None):
        self.persistence = persistence
        self.config = config or ledger_config

    async def get_balance(self, ctx: AccountContext) -> AccountBalance:
        """Current balance snapshot.

        The first call for an unknown account seeds and persists the starting
        balance. Later calls return the stored record, so repeated reads never
        seed twice. A malformed stored record is replaced by a fresh seed.
        """
        ctx.ensure_active()
        data = await self.persistence.get_json(ctx.key(ACCOUNT_NAMESPACE))
        if data is not None:
            try:
                return AccountBalance.model_validate(data)
            except PydanticValidationError as e:
                ctx.logger.warning("ledger.malformed_balance", error=str(e))
        return await self._seed(ctx)

    async def _seed(self, ctx: AccountContext) -> AccountBalance:
        seed = self.config.starting_balance
        balance = AccountBalance(
            account_id=ctx.account_id,
            cash=seed,
            buying_power=seed,
            equity=seed,
            starting_balance=seed,
        )
        await self._write(ctx, balance)
        ctx.logger.info("ledger.balance_seeded", cash=str(seed))
        return balance

    async def _write(self, ctx: AccountContext, balance: AccountBalance) -> None:
        await self.persistence.set_json(ctx.key(ACCOUNT_NAMESPACE), balance.model_dump(mode="json"))

    async def adjust_balance(self, ctx: AccountContext, delta: Decimal) -> Decimal:
        """Add ``delta`` to cash, buying power and equity.

        Args:
            ctx: Account context
            delta: Negative for purchases and withdrawals, positive for sales
                and deposits

        Returns:
            New cash value

        Raises:
            InsufficientFundsError: If cash would become negative
            PersistenceWriteError: If the write fails (nothing is changed)
        """
        delta = to_decimal(delta)
        balance = await self.get_balance(ctx)
        new_cash = balance.cash + delta
        if new_cash < 0:
            raise InsufficientFundsError(required=-delta, available=balance.cash)

        updated = balance.model_copy(update={
            "cash": new_cash,
            "buying_power": new_cash,
            "equity": balance.equity + delta,
            "updated_at": datetime.utcnow(),
        })
        await self._write(ctx, updated)
        ctx.logger.debug("ledger.balance_adjusted", delta=str(delta), cash=str(new_cash))
        return new_cash

    async def mark_to_market(self, ctx: AccountContext, market_value: Decimal) -> AccountBalance:
        """Set equity to cash plus the given market value of open positions."""
        balance = await self.get_balance(ctx)
        equity = balance.cash + market_value
        if equity == balance.equity:
            return balance
        updated = balance.model_copy(update={"equity": equity, "updated_at": datetime.utcnow()})
        await self._write(ctx, updated)
        return updated

    async def deposit(self, ctx: AccountContext, amount) -> WalletTransaction:
        """Add funds to the account and record the transaction."""
        amount = self._validate_amount(amount, "deposit")
        new_cash = await self.adjust_balance(ctx, amount)
        transaction = WalletTransaction(
            type=WalletTransactionType.DEPOSIT,
            amount=amount,
            balance_after=new_cash,
            description="Deposit to trading account",
        )
        await self._record_transaction(ctx, transaction, -amount)
        ctx.logger.info("ledger.deposit", amount=str(amount), cash=str(new_cash))
        return transaction

    async def withdraw(self, ctx: AccountContext, amount) -> WalletTransaction:
        """Remove funds from the account and record the transaction.

        Raises:
            InsufficientFundsError: If the amount exceeds cash
        """
        amount = self._validate_amount(amount, "withdrawal")
        new_cash = await self.adjust_balance(ctx, -amount)
        transaction = WalletTransaction(
            type=WalletTransactionType.WITHDRAWAL,
            amount=amount,
            balance_after=new_cash,
            description="Withdrawal from trading account",
        )
        await self._record_transaction(ctx, transaction, amount)
        ctx.logger.info("ledger.withdrawal", amount=str(amount), cash=str(new_cash))
        return transaction

    async def get_transactions(self, ctx: AccountContext) -> List[WalletTransaction]:
        """Wallet transactions, newest first."""
        ctx.ensure_active()
        data = await self.persistence.get_json(ctx.key(WALLET_NAMESPACE)) or []
        transactions = []
        for item in data:
            try:
                transactions.append(WalletTransaction.model_validate(item))
            except PydanticValidationError as e:
                ctx.logger.warning("ledger.malformed_transaction", error=str(e))
        return transactions

    async def _record_transaction(
        self, ctx: AccountContext, transaction: WalletTransaction, compensation: Decimal
    ) -> None:
        existing = await self.get_transactions(ctx)
        records = [transaction] + existing
        try:
            await self.persistence.set_json(
                ctx.key(WALLET_NAMESPACE), [t.model_dump(mode="json") for t in records]
            )
        except Exception:
            # Undo the cash movement so the ledger matches the journal
            await self.adjust_balance(ctx, compensation)
            raise

    async def reset_ledger(self, ctx: AccountContext) -> AccountBalance:
        """Fresh start: drop positions and history, keep cash and identity.

        With no open positions left, equity collapses to cash. If any step
        fails, the deleted documents are written back before the error
        propagates, so storage still matches the in-memory book and journal.

        Raises:
            PersistenceWriteError: If a delete or the balance write fails
        """
        ctx.ensure_active()
        saved = {}
        for namespace in TRADING_NAMESPACES:
            saved[namespace] = await self.persistence.get(ctx.key(namespace))
        try:
            for namespace in TRADING_NAMESPACES:
                await self.persistence.delete(ctx.key(namespace))
            balance = await self.mark_to_market(ctx, Decimal("0"))
        except Exception:
            await self._restore_documents(ctx, saved)
            raise
        ctx.logger.info("ledger.reset", cash=str(balance.cash))
        return balance

    async def _restore_documents(self, ctx: AccountContext, saved: Dict[str, Optional[str]]) -> None:
        for namespace, raw in saved.items():
            if raw is None:
                continue
            try:
                await self.persistence.set(ctx.key(namespace), raw)
            except Exception as e:
                ctx.logger.error("ledger.reset_restore_failed", namespace=namespace, error=str(e))
        ctx.logger.warning("ledger.reset_rolled_back")

    @staticmethod
    def _validate_amount(amount, label: str) -> Decimal:
        try:
            value = to_decimal(amount)
        except (ArithmeticError, ValueError, TypeError):
            raise ValidationError(f"Please enter a valid {label} amount")
        if not value.is_finite() or value <= 0:
            raise ValidationError(f"Please enter a valid {label} amount")
        return value
