import asyncio
import logging

from web3 import Web3

from core.exceptions import LedgerError, SubmissionError
from core.logging.providers import LOGGER_NAME
from wallet.entities import OperationBundle, SettlementReceipt, WalletIdentity
from wallet.ledger import WalletLedger


def _keccak_hex(text: str) -> str:
    return "0x" + bytes(Web3.keccak(text=text)).hex()


class InMemoryTestLedger(WalletLedger):
    """
    Deterministic in-process ledger for tests and local development.

    Balances move only when a submitted bundle is settled, either right
    away (``auto_settle``) or through ``settle``. ``available`` toggles
    node reachability; ``latency`` delays every read.

    Parameters
    ----------
    chain_id : int
        Network id reported for derived identities
    decimals : int
        Token decimal precision
    auto_settle : bool
        Settle each bundle as soon as it is submitted
    latency : float
        Seconds added to balance reads and submissions
    logger : logging.Logger | None
        Logger instance
    """

    def __init__(
        self,
        chain_id: int = 31337,
        decimals: int = 6,
        auto_settle: bool = False,
        latency: float = 0.0,
        logger: logging.Logger | None = None
    ):
        super().__init__(chain_id, decimals, logger or logging.getLogger(LOGGER_NAME))
        self.auto_settle = auto_settle
        self.latency = latency
        self.available = True
        self.submission_delay = 0.0
        self.balances: dict[str, int] = {}
        self.deployed: set[str] = set()
        self.operations: dict[str, OperationBundle] = {}
        self.receipts: dict[str, SettlementReceipt] = {}
        self._settled_events: dict[str, asyncio.Event] = {}
        self._submission_failures: list[str] = []
        self._lost_acknowledgments = 0
        self._nonce = 0

    def fund(self, address: str, amount: int) -> None:
        key = address.lower()
        self.balances[key] = self.balances.get(key, 0) + amount

    def fail_next_submission(self, reason: str = "bundle rejected") -> None:
        self._submission_failures.append(reason)

    def lose_next_acknowledgment(self) -> None:
        """Accept the next bundle but fail the call as if the connection dropped."""
        self._lost_acknowledgments += 1

    async def _tick(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise LedgerError(details={"reason": "ledger offline"})

    async def derive_address(self, user_id: str) -> str:
        await self._tick()
        digest = Web3.keccak(text=f"{self.chain_id}:{user_id}")
        return Web3.to_checksum_address("0x" + bytes(digest)[-20:].hex())

    async def is_deployed(self, address: str) -> bool:
        await self._tick()
        return address.lower() in self.deployed

    async def get_balance(self, address: str) -> int:
        await self._tick()
        return self.balances.get(address.lower(), 0)

    async def build_operation(
        self,
        sender: WalletIdentity,
        recipient: WalletIdentity,
        amount: int
    ) -> OperationBundle:
        self._nonce += 1
        return OperationBundle(
            sender=sender.address,
            recipient=recipient.address,
            amount=amount,
            requires_deployment=sender.address.lower() not in self.deployed,
            user_op_hash=_keccak_hex(f"{sender.address}:{self._nonce}"),
        )

    async def submit_operation(self, bundle: OperationBundle) -> str:
        if self.submission_delay:
            await asyncio.sleep(self.submission_delay)
        if self.latency:
            await asyncio.sleep(self.latency)
        # an unreachable ledger never saw the bundle
        if not self.available:
            raise SubmissionError(details={"reason": "ledger offline"})

        if self._submission_failures:
            raise SubmissionError(details={"reason": self._submission_failures.pop(0)})

        user_op_hash = bundle.user_op_hash
        self.operations[user_op_hash] = bundle
        self._settled_events[user_op_hash] = asyncio.Event()

        if self.auto_settle:
            self.settle(user_op_hash)

        if self._lost_acknowledgments:
            self._lost_acknowledgments -= 1
            raise LedgerError(details={"call": "submit_operation", "reason": "connection reset"})
        return user_op_hash

    def settle(self, user_op_hash: str, success: bool = True, reason: str | None = None) -> SettlementReceipt:
        """
        Settle a submitted bundle and move its funds.

        Parameters
        ----------
        user_op_hash : str
            Hash of a submitted bundle
        success : bool
            False simulates an on-chain revert
        reason : str | None
            Revert reason for failed settlements

        Returns
        -------
        SettlementReceipt
            Receipt now visible through ``get_operation_receipt``
        """
        if user_op_hash in self.receipts:
            return self.receipts[user_op_hash]

        bundle = self.operations[user_op_hash]
        sender = bundle.sender.lower()

        if success and self.balances.get(sender, 0) < bundle.amount:
            success, reason = False, "transfer amount exceeds balance"

        if success:
            self.balances[sender] -= bundle.amount
            recipient = bundle.recipient.lower()
            self.balances[recipient] = self.balances.get(recipient, 0) + bundle.amount
            if bundle.requires_deployment:
                self.deployed.add(sender)

        receipt = SettlementReceipt(
            user_op_hash=user_op_hash,
            tx_hash=_keccak_hex(f"tx:{user_op_hash}"),
            success=success,
            reason=reason,
        )
        self.receipts[user_op_hash] = receipt
        self._settled_events[user_op_hash].set()
        return receipt

    async def get_operation_receipt(self, user_op_hash: str) -> SettlementReceipt | None:
        await self._tick()
        return self.receipts.get(user_op_hash)

    async def wait_for_settlement(
        self,
        user_op_hash: str,
        timeout: float,
        poll_interval: float
    ) -> SettlementReceipt | None:
        event = self._settled_events.get(user_op_hash)
        if event is None:
            return None
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self.receipts.get(user_op_hash)
