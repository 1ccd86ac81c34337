"""Transaction classifier.

`classify` is a pure function; first matching rule wins:

1. no `to` address        -> ContractDeployment
2. empty call data        -> EthTransfer
3. ERC20 transfer call    -> Erc20Transfer
4. anything else          -> GenericCall

Malformed ERC20 arguments never raise; they fall through to GenericCall so
one bad transaction cannot halt ingestion.
"""

from __future__ import annotations

import logging

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_canonical_address

from evm_indexer.classifier.models import (
    Classification,
    ContractDeployment,
    Erc20Transfer,
    EthTransfer,
    GenericCall,
)
from evm_indexer.ingestor.models import RawTransaction

logger = logging.getLogger(__name__)

SELECTOR_WIDTH = 4
WORD_WIDTH = 32

# transfer(address,uint256) -> 0xa9059cbb
ERC20_TRANSFER_SELECTOR = keccak(text="transfer(address,uint256)")[:SELECTOR_WIDTH]


def decode_erc20_transfer(params: bytes) -> tuple[bytes, int] | None:
    """Decode `transfer` arguments into (recipient, amount).

    Returns None unless `params` is exactly one zero-padded address word
    followed by one uint256 word.
    """
    if len(params) != 2 * WORD_WIDTH:
        return None
    # Address word must be left-padded with 12 zero bytes.
    if any(params[: WORD_WIDTH - 20]):
        return None
    try:
        recipient, amount = abi_decode(["address", "uint256"], params)
    except (DecodingError, ValueError) as e:
        logger.debug("ERC20 transfer arguments did not decode: %s", e)
        return None
    return to_canonical_address(recipient), int(amount)


def classify(tx: RawTransaction) -> Classification:
    """Assign a category to a transaction and extract its fields."""
    if tx.to_address is None:
        return ContractDeployment(
            deployer=tx.from_address,
            bytecode=tx.deployed_bytecode if tx.deployed_bytecode else tx.input,
            contract_address=tx.contract_address,
        )

    if not tx.input:
        return EthTransfer(
            value=tx.value,
            from_address=tx.from_address,
            to_address=tx.to_address,
        )

    selector = tx.input[:SELECTOR_WIDTH] if len(tx.input) >= SELECTOR_WIDTH else None
    params = tx.input[SELECTOR_WIDTH:] if selector is not None else tx.input

    if selector == ERC20_TRANSFER_SELECTOR:
        decoded = decode_erc20_transfer(params)
        if decoded is not None:
            recipient, amount = decoded
            return Erc20Transfer(
                token_address=tx.to_address,
                from_address=tx.from_address,
                to_address=recipient,
                amount=amount,
            )

    return GenericCall(selector=selector, params=params)
