"""Initial schema for the conversation engine.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

This migration creates the LifeStory conversation schema:
- Extensions: uuid-ossp
- Context source tables (read-only here): users, books, book_profiles, chapters
- Conversation tables: chat_histories, conversation_drafts, conversation_questions
- Triggers: updated_at auto-update function and triggers
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UPDATED_AT_TABLES = [
    "users",
    "books",
    "book_profiles",
    "chapters",
    "chat_histories",
    "conversation_drafts",
    "conversation_questions",
]


def _id_column() -> sa.Column:
    return sa.Column(
        "id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", postgresql.TIMESTAMP(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", postgresql.TIMESTAMP(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # EXTENSIONS
    # ==========================================================================
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ==========================================================================
    # USERS TABLE
    # ==========================================================================
    op.create_table(
        "users",
        _id_column(),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    # ==========================================================================
    # BOOKS / BOOK_PROFILES / CHAPTERS (context source)
    # ==========================================================================
    op.create_table(
        "books",
        _id_column(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_books_user_id", "books", ["user_id"])

    op.create_table(
        "book_profiles",
        _id_column(),
        sa.Column("book_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("birth_year", sa.Integer(), nullable=True),
        sa.Column("birthplace", sa.String(255), nullable=True),
        sa.Column("writing_style_preference", sa.String(50), nullable=True),
        sa.Column("life_themes", postgresql.JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("key_people", postgresql.JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("book_id"),
    )
    op.create_index("ix_book_profiles_user_id", "book_profiles", ["user_id"])

    op.create_table(
        "chapters",
        _id_column(),
        sa.Column("book_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("content", sa.Text(), server_default="", nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("position", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_chapters_book_id", "chapters", ["book_id"])
    op.create_index("idx_chapters_user_updated", "chapters", ["user_id", sa.text("updated_at DESC")])

    # ==========================================================================
    # CHAT_HISTORIES TABLE
    # ==========================================================================
    op.create_table(
        "chat_histories",
        _id_column(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("book_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("chapter_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("session_id", sa.String(100), nullable=False),
        sa.Column("conversation_type", sa.String(20), server_default="interview", nullable=False),
        sa.Column("conversation_medium", sa.String(10), server_default="text", nullable=False),
        sa.Column("messages", postgresql.JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("context_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("conversation_goals", postgresql.JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("is_self_conversation", sa.Boolean(), server_default=sa.false(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["chapter_id"], ["chapters.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("session_id"),
        sa.CheckConstraint(
            "conversation_type IN ('interview', 'reflection', 'brainstorming')",
            name="valid_conversation_type",
        ),
        sa.CheckConstraint("conversation_medium IN ('text', 'voice')", name="valid_conversation_medium"),
    )
    op.create_index("idx_chat_histories_user_created", "chat_histories", ["user_id", sa.text("created_at DESC")])
    op.create_index("idx_chat_histories_book_id", "chat_histories", ["book_id"])

    # ==========================================================================
    # CONVERSATION_DRAFTS TABLE
    # ==========================================================================
    op.create_table(
        "conversation_drafts",
        _id_column(),
        sa.Column("session_id", sa.String(100), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("content", sa.Text(), server_default="", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("session_id", "user_id", name="unique_session_draft"),
    )

    # ==========================================================================
    # CONVERSATION_QUESTIONS TABLE
    # ==========================================================================
    op.create_table(
        "conversation_questions",
        _id_column(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("book_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("chapter_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("conversation_session_id", sa.String(100), nullable=True),
        sa.Column("conversation_type", sa.String(20), nullable=False),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("question_hash", sa.String(64), nullable=False),
        sa.Column("semantic_keywords", postgresql.JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("response_quality", sa.Integer(), nullable=True),
        sa.Column("asked_at", postgresql.TIMESTAMP(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["chapter_id"], ["chapters.id"], ondelete="SET NULL"),
        sa.UniqueConstraint(
            "user_id", "book_id", "conversation_type", "question_hash",
            name="unique_scope_question_hash",
        ),
        sa.CheckConstraint(
            "response_quality IS NULL OR (response_quality >= 1 AND response_quality <= 5)",
            name="check_response_quality_range",
        ),
    )
    op.create_index(
        "idx_conversation_questions_scope",
        "conversation_questions",
        ["user_id", "book_id", "conversation_type"],
    )
    op.create_index("idx_conversation_questions_asked_at", "conversation_questions", [sa.text("asked_at DESC")])

    # ==========================================================================
    # UPDATED_AT TRIGGER FUNCTION
    # ==========================================================================
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)

    for table in UPDATED_AT_TABLES:
        op.execute(f"""
            CREATE TRIGGER update_{table}_updated_at
                BEFORE UPDATE ON {table}
                FOR EACH ROW EXECUTE FUNCTION update_updated_at_column();
        """)


def downgrade() -> None:
    for table in UPDATED_AT_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}")

    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")

    for table in reversed(UPDATED_AT_TABLES):
        op.drop_table(table)
