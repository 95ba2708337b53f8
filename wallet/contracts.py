"""Minimal ABIs for the smart account stack."""

from web3 import Web3


FACTORY_ABI = [
    {
        "type": "function",
        "name": "createAccount",
        "inputs": [
            {"name": "userId", "type": "bytes32"},
            {"name": "owner", "type": "address"},
        ],
        "outputs": [{"name": "account", "type": "address"}],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "getAddress",
        "inputs": [
            {"name": "userId", "type": "bytes32"},
            {"name": "owner", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
    },
]

ACCOUNT_ABI = [
    {
        "type": "function",
        "name": "execute",
        "inputs": [
            {"name": "dest", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "func", "type": "bytes"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]

ERC20_ABI = [
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "transfer",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
    },
]

PACKED_USER_OPERATION = {
    "name": "userOp",
    "type": "tuple",
    "components": [
        {"name": "sender", "type": "address"},
        {"name": "nonce", "type": "uint256"},
        {"name": "initCode", "type": "bytes"},
        {"name": "callData", "type": "bytes"},
        {"name": "accountGasLimits", "type": "bytes32"},
        {"name": "preVerificationGas", "type": "uint256"},
        {"name": "gasFees", "type": "bytes32"},
        {"name": "paymasterAndData", "type": "bytes"},
        {"name": "signature", "type": "bytes"},
    ],
}

ENTRY_POINT_ABI = [
    {
        "type": "function",
        "name": "getNonce",
        "inputs": [
            {"name": "sender", "type": "address"},
            {"name": "key", "type": "uint192"},
        ],
        "outputs": [{"name": "nonce", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "getUserOpHash",
        "inputs": [PACKED_USER_OPERATION],
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
    },
]

# gas defaults; deployment needs a larger verification gas limit
CALL_GAS_LIMIT = 200_000
VERIFICATION_GAS_LIMIT = 100_000
DEPLOYMENT_VERIFICATION_GAS_LIMIT = 500_000
PRE_VERIFICATION_GAS = 50_000
PAYMASTER_VALIDITY_SECONDS = 3600


def generate_salt(user_id: str) -> bytes:
    """
    Deterministic CREATE2 salt for a user.

    Parameters
    ----------
    user_id : str
        User identifier

    Returns
    -------
    bytes
        keccak256 of the UTF-8 user id (32 bytes)
    """
    return bytes(Web3.keccak(text=user_id))


def pack_uint128(high: int, low: int) -> bytes:
    """
    Pack two uint128 values into one bytes32 word.

    Parameters
    ----------
    high : int
        Value for the upper 16 bytes
    low : int
        Value for the lower 16 bytes

    Returns
    -------
    bytes
        32-byte big-endian word
    """
    return high.to_bytes(16, "big") + low.to_bytes(16, "big")
