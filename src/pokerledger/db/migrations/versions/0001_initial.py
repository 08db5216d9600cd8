"""ledger and settlement schema

Revision ID: 0001
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "players",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "games",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="ongoing"),
        sa.CheckConstraint("status in ('ongoing','finished')", name="games_status_check"),
    )

    op.create_table(
        "game_players",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("game_id", sa.Text(), sa.ForeignKey("games.id", ondelete="CASCADE"), nullable=False),
        sa.Column("player_id", sa.Text(), sa.ForeignKey("players.id"), nullable=False),
        sa.Column("initial_buyin", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_rebuys", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cash_out", sa.Numeric(12, 2)),
        sa.Column("payment_status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("payment_date", sa.DateTime(timezone=True)),
        sa.CheckConstraint("payment_status in ('pending','paid')", name="game_players_payment_status_check"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("paid_by_player_id", sa.Text(), sa.ForeignKey("players.id"), nullable=False),
        sa.Column("game_id", sa.Text(), sa.ForeignKey("games.id", ondelete="SET NULL")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "expense_splits",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("expense_id", sa.Text(), sa.ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("player_id", sa.Text(), sa.ForeignKey("players.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
    )

    op.create_table(
        "settlements",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status in ('active','replaced')", name="settlements_status_check"),
    )

    op.create_table(
        "settlement_items",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("settlement_id", sa.Text(), sa.ForeignKey("settlements.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("from_participant_id", sa.Text(), sa.ForeignKey("players.id"), nullable=False),
        sa.Column("to_participant_id", sa.Text(), sa.ForeignKey("players.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="settlement_items_amount_positive"),
    )

    # source_ref has no foreign key: entries may outlive a deleted source.
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("participant_id", sa.Text(), sa.ForeignKey("players.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("entry_type", sa.Text(), nullable=False),
        sa.Column("source_ref", sa.Text()),
        sa.Column("description", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "entry_type in ('game_credit','game_debit','expense','settlement')",
            name="ledger_entries_entry_type_check",
        ),
    )

    op.create_index("idx_ledger_entries_participant", "ledger_entries", ["participant_id"])
    op.create_index("idx_ledger_entries_source", "ledger_entries", ["source_ref"])
    op.create_index("idx_settlement_items_settlement", "settlement_items", ["settlement_id"])
    op.create_index("idx_game_players_game", "game_players", ["game_id"])
    op.create_index(
        "uq_settlements_single_active",
        "settlements",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_settlements_single_active", table_name="settlements")
    op.drop_index("idx_game_players_game", table_name="game_players")
    op.drop_index("idx_settlement_items_settlement", table_name="settlement_items")
    op.drop_index("idx_ledger_entries_source", table_name="ledger_entries")
    op.drop_index("idx_ledger_entries_participant", table_name="ledger_entries")

    op.drop_table("ledger_entries")
    op.drop_table("settlement_items")
    op.drop_table("settlements")
    op.drop_table("expense_splits")
    op.drop_table("expenses")
    op.drop_table("game_players")
    op.drop_table("games")
    op.drop_table("players")
