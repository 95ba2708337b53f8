import asyncio
import logging
from abc import ABC, abstractmethod

from core.exceptions import LedgerError
from wallet.entities import OperationBundle, SettlementReceipt, WalletIdentity


class WalletLedger(ABC):
    """
    Settlement layer contract behind the wallet services.

    Implementations raise ``LedgerError`` when the chain or bundler cannot
    be reached, ``WalletCreationError`` when address derivation is not
    configured, and ``SubmissionError`` when a bundle is refused.

    Parameters
    ----------
    chain_id : int
        Network served by this ledger
    decimals : int
        Token decimal precision
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, chain_id: int, decimals: int, logger: logging.Logger):
        self.chain_id = chain_id
        self.decimals = decimals
        self.logger = logger

    @abstractmethod
    async def derive_address(self, user_id: str) -> str:
        """Counterfactual account address for a user."""

    @abstractmethod
    async def is_deployed(self, address: str) -> bool:
        """Whether account code exists at the address."""

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Token balance in base units."""

    @abstractmethod
    async def build_operation(
        self,
        sender: WalletIdentity,
        recipient: WalletIdentity,
        amount: int
    ) -> OperationBundle:
        """Build the bundle moving ``amount`` from sender to recipient."""

    @abstractmethod
    async def submit_operation(self, bundle: OperationBundle) -> str:
        """
        Hand a bundle to the settlement layer and return its hash.

        ``SubmissionError`` means the bundle was refused. ``LedgerError``
        means the outcome is unknown and the bundle may still settle.
        """

    @abstractmethod
    async def get_operation_receipt(self, user_op_hash: str) -> SettlementReceipt | None:
        """Receipt of a settled bundle, or None while it is pending."""

    async def wait_for_settlement(
        self,
        user_op_hash: str,
        timeout: float,
        poll_interval: float
    ) -> SettlementReceipt | None:
        """
        Poll for a bundle receipt until it appears or time runs out.

        Parameters
        ----------
        user_op_hash : str
            Hash returned by ``submit_operation``
        timeout : float
            Seconds to keep polling
        poll_interval : float
            Seconds between polls

        Returns
        -------
        SettlementReceipt | None
            Receipt, or None when the bundle has not settled in time
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                receipt = await self.get_operation_receipt(user_op_hash)
                if receipt is not None:
                    return receipt
            except LedgerError as e:
                self.logger.debug(f"Receipt poll for {user_op_hash} failed: {e.message}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(poll_interval, remaining))
