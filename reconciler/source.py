"""Chain event sources.

``EventSource`` is the boundary between the reconciler and the chain client.
The reconciler only sees ``ChainLog`` records, so tests can drive it with an
in-memory source instead of a JSON-RPC node.
"""
import abc
import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional

from web3 import AsyncWeb3, AsyncHTTPProvider, Web3

from reconciler.abi import CONTRACT_ABI, event_signature
from reconciler.config import POLL_INTERVAL_SECONDS, CONFIRMATIONS, RPC_TIMEOUT_SECONDS
from reconciler.events import ChainLog, EventKind

logger = logging.getLogger(__name__)


class EventSource(abc.ABC):

    @abc.abstractmethod
    async def block_number(self) -> int:
        """Current chain height."""

    @abc.abstractmethod
    async def fetch(self, kinds: Iterable[EventKind], from_block: int, to_block: int) -> List[ChainLog]:
        """Logs of ``kinds`` in the inclusive block range, oldest first."""

    @abc.abstractmethod
    def stream(
        self,
        kinds: Iterable[EventKind],
        from_block: Optional[int] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> AsyncIterator[ChainLog]:
        """Lazily yield logs from ``from_block`` onward.

        Calling it again with a later ``from_block`` resumes from there.
        When ``from_block`` is None the stream starts at the current head.
        ``on_progress(block)`` is called once every log up to ``block`` has
        been yielded, including ranges that held no logs.
        """

    @abc.abstractmethod
    def describe(self) -> Dict[str, str]:
        """Contract address and RPC URL, for status reporting."""


class Web3EventSource(EventSource):
    """Polls ``eth_getLogs`` for the payment contract's events."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        confirmations: int = CONFIRMATIONS,
        timeout: int = RPC_TIMEOUT_SECONDS,
    ):
        if not rpc_url or not contract_address:
            raise ValueError("Missing RPC_URL or CONTRACT_ADDRESS")
        self.rpc_url = rpc_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.poll_interval = poll_interval
        self.confirmations = confirmations
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=CONTRACT_ABI)
        self.topics = {
            kind: Web3.to_hex(Web3.keccak(text=event_signature(kind.value)))
            for kind in EventKind
        }

    def describe(self) -> Dict[str, str]:
        return {"contract_address": self.contract_address, "rpc_url": self.rpc_url}

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def fetch(self, kinds, from_block, to_block):
        topics = {self.topics[EventKind(kind)]: EventKind(kind) for kind in kinds}
        if not topics:
            return []
        entries = await self.w3.eth.get_logs({
            "address": self.contract_address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [list(topics)],
        })

        logs = []
        for entry in entries:
            kind = topics.get(Web3.to_hex(entry["topics"][0]))
            if kind is None:
                continue
            decoded = getattr(self.contract.events, kind.value)().process_log(entry)
            logs.append(self._to_chain_log(kind, decoded))
        logs.sort(key=lambda log: (log.block_number, log.log_index))
        return logs

    async def stream(self, kinds, from_block=None, on_progress=None):
        kinds = list(kinds)
        next_block = from_block
        while True:
            head = await self.block_number() - self.confirmations
            if next_block is None:
                next_block = head + 1
            if head >= next_block:
                logger.debug(f"Polling blocks {next_block}..{head}")
                for log in await self.fetch(kinds, next_block, head):
                    yield log
                next_block = head + 1
                if on_progress is not None:
                    on_progress(head)
            await asyncio.sleep(self.poll_interval)

    @staticmethod
    def _to_chain_log(kind: EventKind, entry) -> ChainLog:
        return ChainLog(
            kind=kind,
            args=dict(entry["args"]),
            transaction_hash=Web3.to_hex(entry["transactionHash"]),
            block_number=int(entry["blockNumber"]),
            log_index=int(entry.get("logIndex", 0)),
        )
