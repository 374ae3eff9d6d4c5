"""
Deposit listener: credits on-chain transfers to the treasury address.

Responsibilities:
- Follow the chain head block by block, resuming from the stored checkpoint.
- Extract native-currency transfers (or ERC-20 Transfer logs when a token
  contract is configured) whose recipient is the treasury.
- Credit each transfer to the sender's account exactly once; the deposit
  record and the credit commit together, keyed by (tx_hash, log_index).
- Watch the treasury balance as a monitoring signal only.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from application.use_cases import CreditDepositUseCase
from domain.entities import DepositEvent, normalize_address
from domain.exceptions import ChainRPCError, InvalidDepositError
from infrastructure.chain_client import (
    ChainRPCClient,
    TRANSFER_EVENT_TOPIC,
    address_to_topic,
    topic_to_address,
)
from infrastructure.repositories import (
    AccountRepository,
    DepositRepository,
    CheckpointRepository,
)

logger = logging.getLogger(__name__)


class TreasuryBalanceMonitor:
    """Logs treasury balance changes. Cannot attribute a sender; never credits."""

    def __init__(
        self,
        chain: ChainRPCClient,
        treasury_address: str,
        token_contract_address: Optional[str] = None
    ):
        self.chain = chain
        self.treasury_address = normalize_address(treasury_address)
        self.token_contract_address = token_contract_address
        self.last_balance: Optional[int] = None

    async def check(self) -> int:
        """Return the change since the previous check (0 on the first one)."""
        if self.token_contract_address:
            balance = await self.chain.token_balance_of(
                self.token_contract_address, self.treasury_address
            )
        else:
            balance = await self.chain.get_balance(self.treasury_address)

        if self.last_balance is None:
            logger.info(f"Initial treasury balance: {balance}")
            self.last_balance = balance
            return 0

        delta = balance - self.last_balance
        if delta > 0:
            logger.info(
                f"Treasury balance increased by {delta} ({self.last_balance} -> {balance}); "
                f"deposits are credited from transactions only"
            )
        elif delta < 0:
            logger.info(
                f"Treasury balance decreased by {-delta} ({self.last_balance} -> {balance})"
            )
        self.last_balance = balance
        return delta


class DepositReconciler:
    CHECKPOINT_NAME = "deposits"

    def __init__(
        self,
        chain: ChainRPCClient,
        session_factory: async_sessionmaker,
        treasury_address: str,
        *,
        token_contract_address: Optional[str] = None,
        token_decimals: int = 18,
        confirmations: int = 1,
        rescan_window: int = 100,
        max_blocks_per_batch: int = 50,
        poll_interval_seconds: float = 5.0,
        monitor: Optional[TreasuryBalanceMonitor] = None,
        monitor_interval_seconds: float = 30.0,
        min_retry_delay: float = 1.0,
        max_retry_delay: float = 60.0
    ):
        if confirmations < 1:
            raise ValueError("confirmations must be at least 1")
        if max_blocks_per_batch < 1:
            raise ValueError("max_blocks_per_batch must be at least 1")

        self.chain = chain
        self.session_factory = session_factory
        self.treasury_address = normalize_address(treasury_address)
        self.token_contract_address = (
            normalize_address(token_contract_address) if token_contract_address else None
        )
        self.token_decimals = token_decimals
        self.confirmations = confirmations
        self.rescan_window = rescan_window
        self.max_blocks_per_batch = max_blocks_per_batch
        self.poll_interval_seconds = poll_interval_seconds
        self.monitor = monitor
        self.monitor_interval_seconds = monitor_interval_seconds
        self.min_retry_delay = min_retry_delay
        self.max_retry_delay = max_retry_delay

        self.caught_up = False
        self._stop_event = asyncio.Event()

    async def scan_range(self, start: int, end: int) -> List[DepositEvent]:
        if self.token_contract_address:
            return await self._scan_token_transfers(start, end)
        return await self._scan_native_transfers(start, end)

    async def _scan_native_transfers(self, start: int, end: int) -> List[DepositEvent]:
        events = []
        for number in range(start, end + 1):
            block = await self.chain.get_block(number, full_transactions=True)
            if block is None:
                raise ChainRPCError(f"Block {number} is not available yet")

            for tx in block.get("transactions") or []:
                if not isinstance(tx, dict):
                    continue
                event = self._native_event(tx, number)
                if event is None:
                    continue
                receipt = await self.chain.get_transaction_receipt(event.tx_hash)
                if not receipt or receipt.get("status") != "0x1":
                    logger.info(f"Skipping failed transfer {event.tx_hash}")
                    continue
                events.append(event)
        return events

    def _native_event(self, tx: Dict[str, Any], block_number: int) -> Optional[DepositEvent]:
        to_address = tx.get("to")
        if not to_address or to_address.lower() != self.treasury_address:
            return None
        try:
            value = int(tx.get("value") or "0x0", 16)
            if value <= 0:
                return None
            return DepositEvent(
                tx_hash=tx["hash"],
                from_address=tx["from"],
                to_address=to_address,
                value=value,
                block_number=block_number
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed transaction in block {block_number}: {e!r}")
            return None

    async def _scan_token_transfers(self, start: int, end: int) -> List[DepositEvent]:
        logs = await self.chain.get_logs(
            start,
            end,
            self.token_contract_address,
            [TRANSFER_EVENT_TOPIC, None, address_to_topic(self.treasury_address)]
        )
        events = []
        for log in logs:
            if log.get("removed"):
                continue
            try:
                topics = log["topics"]
                value = int(log["data"], 16)
                if value <= 0:
                    continue
                events.append(DepositEvent(
                    tx_hash=log["transactionHash"],
                    from_address=topic_to_address(topics[1]),
                    to_address=topic_to_address(topics[2]),
                    value=value,
                    block_number=int(log["blockNumber"], 16),
                    log_index=int(log["logIndex"], 16)
                ))
            except (KeyError, IndexError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed Transfer log: {e!r}")
        return events

    async def process_event(self, event: DepositEvent) -> bool:
        async with self.session_factory() as session:
            use_case = CreditDepositUseCase(
                DepositRepository(session),
                AccountRepository(session),
                session,
                token_decimals=self.token_decimals
            )
            return await use_case.execute(event)

    async def _load_checkpoint(self) -> Optional[int]:
        async with self.session_factory() as session:
            return await CheckpointRepository(session).get(self.CHECKPOINT_NAME)

    async def _save_checkpoint(self, block_number: int) -> None:
        async with self.session_factory() as session:
            await CheckpointRepository(session).set(self.CHECKPOINT_NAME, block_number)
            await session.commit()

    async def sync_once(self) -> int:
        """Process the next batch of confirmed blocks; return deposits credited."""
        head = await self.chain.block_number()
        safe_head = head - self.confirmations + 1
        if safe_head < 0:
            self.caught_up = True
            return 0

        checkpoint = await self._load_checkpoint()
        if checkpoint is None:
            start = max(0, safe_head - self.rescan_window + 1)
            logger.info(f"No checkpoint found, scanning from block {start}")
        else:
            start = checkpoint + 1

        if start > safe_head:
            self.caught_up = True
            return 0

        end = min(safe_head, start + self.max_blocks_per_batch - 1)
        events = await self.scan_range(start, end)

        credited = 0
        for event in events:
            try:
                if await self.process_event(event):
                    credited += 1
            except InvalidDepositError as e:
                logger.error(f"[Deposit] Skipping uncreditable transfer: {e}")

        await self._save_checkpoint(end)
        self.caught_up = end >= safe_head
        if events:
            logger.info(
                f"Blocks {start}-{end}: {len(events)} deposit(s), {credited} credited"
            )
        else:
            logger.debug(f"Blocks {start}-{end}: no deposits")
        return credited

    async def _check_balance(self) -> None:
        try:
            await self.monitor.check()
        except ChainRPCError as e:
            logger.warning(f"Treasury balance check failed: {e}")

    async def run(self) -> None:
        """Follow the chain until stop() is called."""
        loop = asyncio.get_running_loop()
        delay = self.min_retry_delay
        next_monitor_at = 0.0

        logger.info(
            f"Deposit listener started: treasury={self.treasury_address}, "
            f"token={self.token_contract_address or 'native'}"
        )
        while not self._stop_event.is_set():
            try:
                await self.sync_once()
                delay = self.min_retry_delay
                wait = 0.0 if not self.caught_up else self.poll_interval_seconds
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Deposit sync failed, retrying in {delay}s: {e}", exc_info=True)
                wait = delay
                delay = min(delay * 2, self.max_retry_delay)

            if self.monitor and loop.time() >= next_monitor_at:
                await self._check_balance()
                next_monitor_at = loop.time() + self.monitor_interval_seconds

            if wait > 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
        logger.info("Deposit listener stopped")

    def stop(self) -> None:
        self._stop_event.set()
