"""Transaction classification - semantic category per transaction."""

from evm_indexer.classifier.classifier import (
    ERC20_TRANSFER_SELECTOR,
    classify,
    decode_erc20_transfer,
)
from evm_indexer.classifier.models import (
    Classification,
    ContractDeployment,
    Erc20Transfer,
    EthTransfer,
    GenericCall,
)

__all__ = [
    "ERC20_TRANSFER_SELECTOR",
    "Classification",
    "ContractDeployment",
    "Erc20Transfer",
    "EthTransfer",
    "GenericCall",
    "classify",
    "decode_erc20_transfer",
]
