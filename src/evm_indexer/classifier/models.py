"""Classification results: one record shape per transaction category."""

from __future__ import annotations

from dataclasses import dataclass

from evm_indexer.models import TxCategory


@dataclass(frozen=True)
class EthTransfer:
    """Plain value transfer (empty call data)."""

    value: int
    from_address: bytes
    to_address: bytes

    @property
    def category(self) -> TxCategory:
        return TxCategory.ETH_TRANSFER


@dataclass(frozen=True)
class Erc20Transfer:
    """Decoded `transfer(address,uint256)` call on a token contract.

    Attributes:
        token_address: The invoked contract (the transaction's `to`).
        from_address: Token sender (the transaction's `from`).
        to_address: Decoded recipient.
        amount: Decoded amount in token base units.
    """

    token_address: bytes
    from_address: bytes
    to_address: bytes
    amount: int

    @property
    def category(self) -> TxCategory:
        return TxCategory.ERC20_TRANSFER


@dataclass(frozen=True)
class ContractDeployment:
    """Contract creation (no `to` address)."""

    deployer: bytes
    bytecode: bytes
    contract_address: bytes | None = None

    @property
    def category(self) -> TxCategory:
        return TxCategory.CONTRACT_DEPLOYMENT


@dataclass(frozen=True)
class GenericCall:
    """Any other call; selector and parameters are kept unresolved."""

    selector: bytes | None
    params: bytes

    @property
    def category(self) -> TxCategory:
        return TxCategory.GENERIC_CALL

    @property
    def method_id(self) -> int | None:
        """Selector as an unsigned 32-bit integer."""
        return int.from_bytes(self.selector, "big") if self.selector is not None else None


Classification = EthTransfer | Erc20Transfer | ContractDeployment | GenericCall
