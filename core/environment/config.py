import os
from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings using Pydantic Settings.

    Attributes
    ----------
    ledger_backend : Literal["live", "memory"]
        Which wallet ledger variant backs the service
    api_prefix : str
        Versioned path prefix for wallet endpoints
    log_level : str
        Root logging level
    rpc_url : str
        JSON-RPC endpoint of the chain node
    chain_id : int
        Target network id (Base mainnet by default)
    bundler_url : str
        ERC-4337 bundler JSON-RPC endpoint
    entry_point_address : str
        EntryPoint contract (v0.7 canonical address by default)
    factory_address : str
        Smart account factory used for address derivation
    paymaster_address : str
        Verifying paymaster sponsoring gas (optional)
    token_address : str
        Stablecoin ERC-20 contract
    token_symbol : str
        Stablecoin ticker
    token_decimals : int
        Stablecoin decimal precision
    relayer_private_key : str
        Key owning and signing for smart accounts
    redis_host : str
        Redis host for storage, locks and caching
    redis_port : int
        Redis port
    redis_db : int
        Redis database number
    redis_password : str
        Redis password (optional)
    fiat_currency : str
        Reference fiat currency for balance conversion
    pricing_url : str
        Exchange rate endpoint template; empty means a fixed 1:1 peg
    pricing_cache_ttl : int
        Seconds an exchange rate stays cached
    transfer_ack_timeout : float
        Seconds a caller waits for submission acknowledgment
    settlement_timeout : float
        Seconds the settlement watcher waits for a receipt
    settlement_poll_interval : float
        Seconds between bundler receipt polls
    wallet_lock_timeout : float
        Seconds to wait for a wallet lock before giving up
    idempotency_ttl_hours : int
        Hours an idempotency key stays bound to its transfer
    payment_request_default_expiry_minutes : int
        Default lifetime of a payment request
    """

    ledger_backend: Literal["live", "memory"] = "live"
    api_prefix: str = "/api/v1/wallet"
    log_level: str = "INFO"

    rpc_url: str = "https://mainnet.base.org"
    chain_id: int = 8453
    bundler_url: str = ""
    entry_point_address: str = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
    factory_address: str = ""
    paymaster_address: str = ""
    token_address: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    token_symbol: str = "USDC"
    token_decimals: int = 6
    relayer_private_key: str = ""

    redis_host: str
    redis_port: int
    redis_db: int
    redis_password: str

    fiat_currency: str = "USD"
    pricing_url: str = ""
    pricing_cache_ttl: int = 60

    transfer_ack_timeout: float = 30.0
    settlement_timeout: float = 60.0
    settlement_poll_interval: float = 2.0
    wallet_lock_timeout: float = 10.0
    idempotency_ttl_hours: int = 24
    payment_request_default_expiry_minutes: int = 30

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False
    )

    @property
    def idempotency_ttl_seconds(self) -> int:
        """
        Idempotency key lifetime in seconds.

        Returns
        -------
        int
            TTL applied to stored idempotency keys
        """
        return self.idempotency_ttl_hours * 3600
