import asyncio
import json
from decimal import Decimal

import pytest
import httpx

from domain.entities import DepositEvent
from domain.exceptions import ChainRPCError
from infrastructure.chain_client import (
    ChainRPCClient,
    TRANSFER_EVENT_TOPIC,
    address_to_topic,
    topic_to_address
)
from infrastructure.deposit_listener import DepositReconciler, TreasuryBalanceMonitor
from infrastructure.repositories import AccountRepository, CheckpointRepository


TREASURY = "0x" + "11" * 20
SENDER = "0x" + "ab" * 20
OTHER = "0x" + "22" * 20
TOKEN = "0x" + "cc" * 20


class FakeChain:
    """Minimal JSON-RPC node backed by in-memory blocks, receipts and logs."""

    def __init__(self, head: int):
        self.head = head
        self.blocks = {}
        self.failed = set()
        self.logs = []
        self.balance = 0
        self.calls = []

    def add_transfer(self, block: int, tx_hash: str, sender: str, to: str, value: int, ok=True):
        self.blocks.setdefault(block, []).append({
            "hash": tx_hash,
            "from": sender,
            "to": to,
            "value": hex(value),
        })
        if not ok:
            self.failed.add(tx_hash.lower())

    def add_token_transfer(self, block: int, tx_hash: str, log_index: int, value: int, removed=False):
        self.logs.append({
            "address": TOKEN,
            "topics": [TRANSFER_EVENT_TOPIC, address_to_topic(SENDER), address_to_topic(TREASURY)],
            "data": hex(value),
            "blockNumber": hex(block),
            "transactionHash": tx_hash,
            "logIndex": hex(log_index),
            "removed": removed,
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        self.calls.append((method, params))

        if method == "eth_blockNumber":
            result = hex(self.head)
        elif method == "eth_getBlockByNumber":
            number = int(params[0], 16)
            result = None
            if number <= self.head:
                result = {"number": hex(number), "transactions": self.blocks.get(number, [])}
        elif method == "eth_getTransactionReceipt":
            result = {"status": "0x0" if params[0] in self.failed else "0x1"}
        elif method == "eth_getLogs":
            query = params[0]
            start, end = int(query["fromBlock"], 16), int(query["toBlock"], 16)
            assert query["topics"][2] == address_to_topic(TREASURY)
            result = [
                log for log in self.logs
                if start <= int(log["blockNumber"], 16) <= end
            ]
        elif method == "eth_getBalance":
            result = hex(self.balance)
        elif method == "eth_call":
            result = "0x" + format(self.balance, "064x")
        else:
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": body["id"],
                "error": {"code": -32601, "message": "method not found"}
            })

        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def client(self, **kwargs) -> ChainRPCClient:
        return ChainRPCClient(
            "http://rpc.test",
            client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            min_retry_delay=0,
            **kwargs
        )


def build_reconciler(chain, session_factory, **kwargs):
    options = dict(confirmations=1, rescan_window=100, max_blocks_per_batch=50)
    options.update(kwargs)
    return DepositReconciler(chain, session_factory, TREASURY, **options)


async def balance_of(session_factory, account_id):
    async with session_factory() as session:
        account = await AccountRepository(session).get(account_id)
    return account.balance if account else Decimal("0")


def test_topic_address_conversion():
    topic = address_to_topic(SENDER.upper().replace("0X", "0x"))
    assert len(topic) == 66
    assert topic_to_address(topic) == SENDER


@pytest.mark.asyncio
async def test_native_deposits_credited(session_factory):
    fake = FakeChain(head=10)
    fake.add_transfer(5, "0xH1", SENDER.upper().replace("0X", "0x"), TREASURY, 10 ** 18)
    fake.add_transfer(6, "0xh2", SENDER, OTHER, 10 ** 18)
    fake.add_transfer(7, "0xh3", SENDER, TREASURY, 10 ** 18, ok=False)
    fake.add_transfer(8, "0xh4", SENDER, TREASURY, 0)
    chain = fake.client()
    reconciler = build_reconciler(chain, session_factory)

    credited = await reconciler.sync_once()
    await chain.close()

    assert credited == 1
    assert reconciler.caught_up
    assert await balance_of(session_factory, SENDER) == Decimal("1")
    async with session_factory() as session:
        assert await CheckpointRepository(session).get("deposits") == 10


@pytest.mark.asyncio
async def test_rescan_does_not_credit_twice(session_factory):
    fake = FakeChain(head=10)
    fake.add_transfer(5, "0xhash1", SENDER, TREASURY, 10 ** 18)
    chain = fake.client()
    reconciler = build_reconciler(chain, session_factory)

    assert await reconciler.sync_once() == 1

    async with session_factory() as session:
        await CheckpointRepository(session).set("deposits", 0)
        await session.commit()

    assert await reconciler.sync_once() == 0
    await chain.close()

    assert await balance_of(session_factory, SENDER) == Decimal("1")


@pytest.mark.asyncio
async def test_process_event_is_idempotent(session_factory):
    fake = FakeChain(head=0)
    chain = fake.client()
    reconciler = build_reconciler(chain, session_factory, token_decimals=0)
    event = DepositEvent("0xhash1", "0xabc", TREASURY, value=10, block_number=1)

    assert await reconciler.process_event(event) is True
    assert await reconciler.process_event(event) is False
    await chain.close()

    assert await balance_of(session_factory, "0xabc") == Decimal("10")


@pytest.mark.asyncio
async def test_token_transfer_logs_credited(session_factory):
    fake = FakeChain(head=20)
    fake.add_token_transfer(5, "0xt1", 0, 2_500_000)
    fake.add_token_transfer(5, "0xt1", 1, 500_000)
    fake.add_token_transfer(9, "0xt2", 0, 1_000_000, removed=True)
    chain = fake.client()
    reconciler = build_reconciler(
        chain, session_factory, token_contract_address=TOKEN, token_decimals=6
    )

    credited = await reconciler.sync_once()
    await chain.close()

    assert credited == 2
    assert await balance_of(session_factory, SENDER) == Decimal("3")
    assert not any(method == "eth_getBlockByNumber" for method, _ in fake.calls)


@pytest.mark.asyncio
async def test_resume_from_checkpoint_in_batches(session_factory):
    fake = FakeChain(head=200)
    fake.add_token_transfer(120, "0xa", 0, 10 ** 6)
    fake.add_token_transfer(180, "0xb", 0, 10 ** 6)
    chain = fake.client()
    reconciler = build_reconciler(
        chain, session_factory, token_contract_address=TOKEN, token_decimals=6
    )

    async with session_factory() as session:
        await CheckpointRepository(session).set("deposits", 100)
        await session.commit()

    assert await reconciler.sync_once() == 1
    assert not reconciler.caught_up
    assert await reconciler.sync_once() == 1
    assert reconciler.caught_up
    assert await reconciler.sync_once() == 0
    await chain.close()

    ranges = [
        (int(params[0]["fromBlock"], 16), int(params[0]["toBlock"], 16))
        for method, params in fake.calls if method == "eth_getLogs"
    ]
    assert ranges == [(101, 150), (151, 200)]
    assert await balance_of(session_factory, SENDER) == Decimal("2")


@pytest.mark.asyncio
async def test_unconfirmed_blocks_wait(session_factory):
    fake = FakeChain(head=10)
    fake.add_transfer(9, "0xlate", SENDER, TREASURY, 10 ** 18)
    chain = fake.client()
    reconciler = build_reconciler(chain, session_factory, confirmations=3)

    assert await reconciler.sync_once() == 0
    assert await balance_of(session_factory, SENDER) == Decimal("0")

    fake.head = 11
    assert await reconciler.sync_once() == 1
    await chain.close()

    assert await balance_of(session_factory, SENDER) == Decimal("1")


@pytest.mark.asyncio
async def test_missing_block_raises(session_factory):
    fake = FakeChain(head=10)
    chain = fake.client()
    reconciler = build_reconciler(chain, session_factory)

    with pytest.raises(ChainRPCError):
        await reconciler.scan_range(10, 12)
    await chain.close()


@pytest.mark.asyncio
async def test_run_until_stopped(session_factory):
    fake = FakeChain(head=3)
    fake.add_transfer(2, "0xrun", SENDER, TREASURY, 10 ** 18)
    chain = fake.client()
    reconciler = build_reconciler(
        chain,
        session_factory,
        poll_interval_seconds=0.01,
        monitor=TreasuryBalanceMonitor(chain, TREASURY)
    )

    task = asyncio.create_task(reconciler.run())
    for _ in range(200):
        if reconciler.caught_up:
            break
        await asyncio.sleep(0.01)
    reconciler.stop()
    await asyncio.wait_for(task, timeout=5)
    await chain.close()

    assert await balance_of(session_factory, SENDER) == Decimal("1")


@pytest.mark.asyncio
async def test_balance_monitor_never_credits(session_factory):
    fake = FakeChain(head=0)
    chain = fake.client()
    monitor = TreasuryBalanceMonitor(chain, TREASURY)

    fake.balance = 100
    assert await monitor.check() == 0
    fake.balance = 250
    assert await monitor.check() == 150
    fake.balance = 200
    assert await monitor.check() == -50
    await chain.close()

    async with session_factory() as session:
        assert await AccountRepository(session).get(SENDER) is None


@pytest.mark.asyncio
async def test_token_balance_monitor_uses_balance_of():
    fake = FakeChain(head=0)
    fake.balance = 42
    chain = fake.client()
    monitor = TreasuryBalanceMonitor(chain, TREASURY, token_contract_address=TOKEN)

    await monitor.check()
    await chain.close()

    method, params = fake.calls[-1]
    assert method == "eth_call"
    assert params[0]["to"] == TOKEN
    assert params[0]["data"].startswith("0x70a08231")
    assert monitor.last_balance == 42


@pytest.mark.asyncio
async def test_rpc_retries_transient_errors():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x10"})

    chain = ChainRPCClient(
        "http://rpc.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        max_retries=3,
        min_retry_delay=0
    )
    assert await chain.block_number() == 16
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_rpc_gives_up_after_retries():
    fake = FakeChain(head=0)
    chain = fake.client(max_retries=2)

    with pytest.raises(ChainRPCError):
        await chain._call("eth_unknownMethod")
    assert len(fake.calls) == 2


@pytest.mark.asyncio
async def test_oversized_deposit_does_not_block_later_deposits(session_factory):
    fake = FakeChain(head=3)
    fake.add_transfer(1, "0xwhale", SENDER, TREASURY, 10 ** 30)
    fake.add_transfer(2, "0xnormal", OTHER, TREASURY, 10 ** 18)
    chain = fake.client()
    reconciler = build_reconciler(chain, session_factory)

    assert await reconciler.sync_once() == 1
    assert reconciler.caught_up
    assert await reconciler.sync_once() == 0
    await chain.close()

    assert await balance_of(session_factory, OTHER) == Decimal("1")
    assert await balance_of(session_factory, SENDER) == Decimal("0")
    async with session_factory() as session:
        assert await CheckpointRepository(session).get("deposits") == 3
