import asyncio
import logging
import time

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from core.environment.config import Settings
from core.exceptions import LedgerError, SubmissionError, WalletCreationError
from wallet.contracts import (
    ACCOUNT_ABI,
    CALL_GAS_LIMIT,
    DEPLOYMENT_VERIFICATION_GAS_LIMIT,
    ENTRY_POINT_ABI,
    ERC20_ABI,
    FACTORY_ABI,
    PAYMASTER_VALIDITY_SECONDS,
    PRE_VERIFICATION_GAS,
    VERIFICATION_GAS_LIMIT,
    generate_salt,
    pack_uint128,
)
from wallet.entities import OperationBundle, SettlementReceipt, WalletIdentity
from wallet.ledger import WalletLedger


RPC_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError)


class LiveLedger(WalletLedger):
    """
    Ledger backed by an EVM node and an ERC-4337 bundler.

    Parameters
    ----------
    web3 : AsyncWeb3
        Web3 client for the configured chain
    settings : Settings
        Application settings
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, web3: AsyncWeb3, settings: Settings, logger: logging.Logger):
        super().__init__(settings.chain_id, settings.token_decimals, logger)
        self.web3 = web3
        self.settings = settings
        self.bundler_url = settings.bundler_url
        self.token = web3.eth.contract(
            address=web3.to_checksum_address(settings.token_address), abi=ERC20_ABI
        )
        self.entry_point = web3.eth.contract(
            address=web3.to_checksum_address(settings.entry_point_address), abi=ENTRY_POINT_ABI
        )
        self._owner = (
            Account.from_key(settings.relayer_private_key)
            if settings.relayer_private_key else None
        )

    def _factory(self):
        if not self.settings.factory_address:
            raise WalletCreationError("error.wallet.factory_not_configured")
        return self.web3.eth.contract(
            address=self.web3.to_checksum_address(self.settings.factory_address),
            abi=FACTORY_ABI
        )

    def _owner_account(self):
        if self._owner is None:
            raise WalletCreationError("error.wallet.owner_not_configured")
        return self._owner

    async def derive_address(self, user_id: str) -> str:
        """
        Compute the counterfactual account address through the factory.

        Parameters
        ----------
        user_id : str
            User identifier

        Returns
        -------
        str
            Checksummed account address
        """
        factory = self._factory()
        owner = self._owner_account()

        try:
            address = await factory.functions.getAddress(
                generate_salt(user_id), owner.address
            ).call()
        except RPC_ERRORS as e:
            raise LedgerError(details={"call": "getAddress", "reason": str(e)}) from e

        return self.web3.to_checksum_address(address)

    async def is_deployed(self, address: str) -> bool:
        try:
            code = await self.web3.eth.get_code(self.web3.to_checksum_address(address))
        except RPC_ERRORS as e:
            raise LedgerError(details={"call": "getCode", "reason": str(e)}) from e
        return len(code) > 0

    async def get_balance(self, address: str) -> int:
        try:
            balance = await self.token.functions.balanceOf(
                self.web3.to_checksum_address(address)
            ).call()
        except RPC_ERRORS as e:
            raise LedgerError(details={"call": "balanceOf", "reason": str(e)}) from e
        return int(balance)

    async def build_operation(
        self,
        sender: WalletIdentity,
        recipient: WalletIdentity,
        amount: int
    ) -> OperationBundle:
        """
        Build, sponsor and sign a packed user operation calling
        ``token.transfer`` from the sender's account.

        Parameters
        ----------
        sender : WalletIdentity
            Sending smart account
        recipient : WalletIdentity
            Receiving address
        amount : int
            Token base units

        Returns
        -------
        OperationBundle
            Bundle carrying the signed user operation
        """
        sender_address = self.web3.to_checksum_address(sender.address)
        recipient_address = self.web3.to_checksum_address(recipient.address)
        requires_deployment = not sender.is_deployed

        transfer_data = self.token.encode_abi("transfer", args=[recipient_address, amount])
        account = self.web3.eth.contract(address=sender_address, abi=ACCOUNT_ABI)
        call_data = Web3.to_bytes(hexstr=account.encode_abi(
            "execute", args=[self.token.address, 0, Web3.to_bytes(hexstr=transfer_data)]
        ))

        init_code = self._build_init_code(sender.user_id) if requires_deployment else b""

        try:
            nonce = 0 if requires_deployment else await self.entry_point.functions.getNonce(
                sender_address, 0
            ).call()
            gas_price = await self.web3.eth.gas_price
        except RPC_ERRORS as e:
            raise LedgerError(details={"call": "buildOperation", "reason": str(e)}) from e

        verification_gas = DEPLOYMENT_VERIFICATION_GAS_LIMIT if requires_deployment else VERIFICATION_GAS_LIMIT
        account_gas_limits = pack_uint128(CALL_GAS_LIMIT, verification_gas)
        gas_fees = pack_uint128(gas_price // 10, gas_price)
        paymaster_and_data = self._build_paymaster_data()

        user_op = [
            sender_address,
            nonce,
            init_code,
            call_data,
            account_gas_limits,
            PRE_VERIFICATION_GAS,
            gas_fees,
            paymaster_and_data,
            b"",
        ]

        try:
            user_op_hash = await self.entry_point.functions.getUserOpHash(tuple(user_op)).call()
        except RPC_ERRORS as e:
            raise LedgerError(details={"call": "getUserOpHash", "reason": str(e)}) from e

        signed = self._owner_account().sign_message(encode_defunct(primitive=bytes(user_op_hash)))

        return OperationBundle(
            sender=sender_address,
            recipient=recipient_address,
            amount=amount,
            requires_deployment=requires_deployment,
            user_op_hash=Web3.to_hex(user_op_hash),
            user_operation={
                "sender": sender_address,
                "nonce": Web3.to_hex(nonce),
                "initCode": Web3.to_hex(init_code),
                "callData": Web3.to_hex(call_data),
                "accountGasLimits": Web3.to_hex(account_gas_limits),
                "preVerificationGas": Web3.to_hex(PRE_VERIFICATION_GAS),
                "gasFees": Web3.to_hex(gas_fees),
                "paymasterAndData": Web3.to_hex(paymaster_and_data),
                "signature": Web3.to_hex(bytes(signed.signature)),
            },
        )

    def _build_init_code(self, user_id: str | None) -> bytes:
        if user_id is None:
            raise WalletCreationError("error.wallet.unknown_owner")
        factory = self._factory()
        init_data = factory.encode_abi(
            "createAccount", args=[generate_salt(user_id), self._owner_account().address]
        )
        return Web3.to_bytes(hexstr=factory.address) + Web3.to_bytes(hexstr=init_data)

    def _build_paymaster_data(self) -> bytes:
        if not self.settings.paymaster_address:
            return b""
        valid_until = int(time.time()) + PAYMASTER_VALIDITY_SECONDS
        valid_after = 0
        return (
            Web3.to_bytes(hexstr=self.web3.to_checksum_address(self.settings.paymaster_address))
            + valid_until.to_bytes(6, "big")
            + valid_after.to_bytes(6, "big")
        )

    async def submit_operation(self, bundle: OperationBundle) -> str:
        """
        Send a signed user operation to the bundler.

        Parameters
        ----------
        bundle : OperationBundle
            Bundle built by ``build_operation``

        Returns
        -------
        str
            User operation hash

        Raises
        ------
        SubmissionError
            If the operation was definitely not accepted
        LedgerError
            If the bundler answer was lost; the operation may still land
        """
        if bundle.user_operation is None:
            raise SubmissionError(details={"reason": "bundle carries no user operation"})
        if not self.bundler_url:
            raise SubmissionError(details={"reason": "error.ledger.bundler_not_configured"})

        try:
            data = await self._bundler_request(
                "eth_sendUserOperation",
                [bundle.user_operation, self.entry_point.address]
            )
        except LedgerError as e:
            # a refused connection never delivered the operation
            if isinstance(e.__cause__, aiohttp.ClientConnectorError):
                raise SubmissionError(details=e.details) from e
            raise

        if data.get("error"):
            reason = data["error"].get("message") or "Bundler error"
            raise SubmissionError(details={"reason": reason})

        user_op_hash = data.get("result")
        if not user_op_hash:
            raise SubmissionError(details={"reason": "bundler returned no operation hash"})

        self.logger.info(f"User operation {user_op_hash} accepted for {bundle.sender}")
        return user_op_hash

    async def get_operation_receipt(self, user_op_hash: str) -> SettlementReceipt | None:
        data = await self._bundler_request("eth_getUserOperationReceipt", [user_op_hash])

        if data.get("error"):
            raise LedgerError(details={
                "call": "eth_getUserOperationReceipt",
                "reason": data["error"].get("message"),
            })

        result = data.get("result")
        if not result:
            return None

        receipt = result.get("receipt") or {}
        return SettlementReceipt(
            user_op_hash=user_op_hash,
            tx_hash=receipt.get("transactionHash"),
            success=bool(result.get("success", True)),
            reason=result.get("reason") or None,
        )

    async def _bundler_request(self, method: str, params: list) -> dict:
        """
        Perform one bundler JSON-RPC call.

        Parameters
        ----------
        method : str
            JSON-RPC method
        params : list
            Method parameters

        Returns
        -------
        dict
            Decoded JSON-RPC response

        Raises
        ------
        LedgerError
            If the bundler is not configured or unreachable
        """
        if not self.bundler_url:
            raise LedgerError("error.ledger.bundler_not_configured")

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        timeout = aiohttp.ClientTimeout(total=self.settings.transfer_ack_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.bundler_url, json=payload) as response:
                    if response.status != 200:
                        raise LedgerError(details={
                            "call": method,
                            "reason": f"bundler responded with HTTP {response.status}",
                        })
                    return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise LedgerError(details={"call": method, "reason": str(e)}) from e
