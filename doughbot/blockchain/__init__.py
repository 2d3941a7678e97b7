"""Chain connection and contract handle."""

from .client import Capability, ChainConnection, ChainConnectionBuilder, TransactionReceipt
from .contract import ContractHandle, load_abi, load_bytecode

__all__ = [
    "Capability",
    "ChainConnection",
    "ChainConnectionBuilder",
    "TransactionReceipt",
    "ContractHandle",
    "load_abi",
    "load_bytecode",
]
