"""Initial schema: identifier arena, blocks, transactions, stats and ledger.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UINT256 = sa.Numeric(78, 0)
SURROGATE_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

ID_TYPE = sa.Enum("eoa", "contract", "txhash", "blockhash", name="id_type")
TX_CATEGORY = sa.Enum(
    "eth_transfer", "erc20_transfer", "contract_deployment", "generic_call", name="tx_category"
)


def upgrade() -> None:
    # Identifier arena
    op.create_table(
        "ids",
        sa.Column("id", SURROGATE_ID, autoincrement=True, nullable=False),
        sa.Column("prefix", sa.LargeBinary(16), nullable=False),
        sa.Column("remainder", sa.LargeBinary(), nullable=False),
        sa.Column("id_type", ID_TYPE, nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("id_type", "prefix", "remainder", name="uq_ids_value"),
    )
    op.create_index("idx_ids_prefix_type", "ids", ["prefix", "id_type"])

    op.create_table(
        "nicks",
        sa.Column("id", SURROGATE_ID, autoincrement=True, nullable=False),
        sa.Column("identifier_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("nick", sa.String(255), nullable=False),
        sa.Column("nick_type", sa.SmallInteger(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_nicks_identifier", "nicks", ["identifier_id"])

    op.create_table(
        "erc20tokens",
        sa.Column("identifier_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("token_name", sa.String(255), nullable=False),
        sa.Column("symbol", sa.String(100), nullable=False),
        sa.Column("decimals", sa.SmallInteger(), nullable=False),
        sa.Column("supply", UINT256, nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("identifier_id"),
    )
    op.create_index("idx_erc20tokens_symbol", "erc20tokens", ["symbol"])

    # Blocks and transactions
    op.create_table(
        "blocks",
        sa.Column("identifier_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("height", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("parent_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=True),
        sa.Column("tx_count", sa.Integer(), nullable=False),
        sa.Column("committed_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("identifier_id"),
        sa.UniqueConstraint("height", name="uq_blocks_height"),
    )

    op.create_table(
        "txs",
        sa.Column("txhash_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column(
            "block_id", sa.BigInteger(), sa.ForeignKey("blocks.identifier_id"), nullable=False
        ),
        sa.Column("block_height", sa.BigInteger(), nullable=False),
        sa.Column("tx_index", sa.Integer(), nullable=False),
        sa.Column("category", TX_CATEGORY, nullable=False),
        sa.Column("tx_value", UINT256, nullable=False),
        sa.Column("from_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("to_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=True),
        sa.Column("gas_limit", sa.BigInteger(), nullable=False),
        sa.Column("gas_price", UINT256, nullable=False),
        sa.Column("method_id", sa.BigInteger(), nullable=True),
        sa.Column("params", sa.LargeBinary(), nullable=True),
        sa.PrimaryKeyConstraint("txhash_id"),
    )
    op.create_index("idx_txs_block_height", "txs", ["block_height", "tx_index"])
    op.create_index("idx_txs_block_id", "txs", ["block_id"])
    op.create_index("idx_txs_from", "txs", ["from_id"])
    op.create_index("idx_txs_to", "txs", ["to_id"])

    op.create_table(
        "ethtxs",
        sa.Column("txhash_id", sa.BigInteger(), sa.ForeignKey("txs.txhash_id"), nullable=False),
        sa.Column("tx_value", UINT256, nullable=False),
        sa.Column("from_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("to_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.PrimaryKeyConstraint("txhash_id"),
    )

    op.create_table(
        "erc20txs",
        sa.Column("txhash_id", sa.BigInteger(), sa.ForeignKey("txs.txhash_id"), nullable=False),
        sa.Column("token_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("from_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("to_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("tx_value", UINT256, nullable=False),
        sa.PrimaryKeyConstraint("txhash_id"),
    )
    op.create_index("idx_erc20txs_token", "erc20txs", ["token_id"])

    op.create_table(
        "contracts",
        sa.Column("txhash_id", sa.BigInteger(), sa.ForeignKey("txs.txhash_id"), nullable=False),
        sa.Column("address_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=True),
        sa.Column("deployer_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("bytecode", sa.LargeBinary(), nullable=False),
        sa.PrimaryKeyConstraint("txhash_id"),
    )
    op.create_index("idx_contracts_deployer", "contracts", ["deployer_id"])

    # Aggregates
    op.create_table(
        "stats",
        sa.Column("address_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("token_id", sa.BigInteger(), nullable=False),
        sa.Column("balance", UINT256, nullable=False),
        sa.Column("first_in", sa.BigInteger(), nullable=True),
        sa.Column("first_out", sa.BigInteger(), nullable=True),
        sa.Column("last_in", sa.BigInteger(), nullable=True),
        sa.Column("last_out", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("address_id", "token_id"),
    )

    op.create_table(
        "transfer_ledger",
        sa.Column("id", SURROGATE_ID, autoincrement=True, nullable=False),
        sa.Column("txhash_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("block_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=False),
        sa.Column("block_height", sa.BigInteger(), nullable=False),
        sa.Column("token_id", sa.BigInteger(), nullable=False),
        sa.Column("from_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=True),
        sa.Column("to_id", sa.BigInteger(), sa.ForeignKey("ids.id"), nullable=True),
        sa.Column("amount", UINT256, nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("retracted", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_ledger_from_token", "transfer_ledger", ["from_id", "token_id", "retracted"]
    )
    op.create_index("idx_ledger_to_token", "transfer_ledger", ["to_id", "token_id", "retracted"])
    op.create_index("idx_ledger_block", "transfer_ledger", ["block_id", "retracted"])
    op.create_index("idx_ledger_tx", "transfer_ledger", ["txhash_id"])


def downgrade() -> None:
    for index, table in (
        ("idx_ledger_tx", "transfer_ledger"),
        ("idx_ledger_block", "transfer_ledger"),
        ("idx_ledger_to_token", "transfer_ledger"),
        ("idx_ledger_from_token", "transfer_ledger"),
        ("idx_contracts_deployer", "contracts"),
        ("idx_erc20txs_token", "erc20txs"),
        ("idx_txs_to", "txs"),
        ("idx_txs_from", "txs"),
        ("idx_txs_block_id", "txs"),
        ("idx_txs_block_height", "txs"),
        ("idx_erc20tokens_symbol", "erc20tokens"),
        ("idx_nicks_identifier", "nicks"),
        ("idx_ids_prefix_type", "ids"),
    ):
        op.drop_index(index, table_name=table)

    for table in (
        "transfer_ledger",
        "stats",
        "contracts",
        "erc20txs",
        "ethtxs",
        "txs",
        "blocks",
        "erc20tokens",
        "nicks",
        "ids",
    ):
        op.drop_table(table)

    TX_CATEGORY.drop(op.get_bind(), checkfirst=True)
    ID_TYPE.drop(op.get_bind(), checkfirst=True)
