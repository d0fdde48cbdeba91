from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_admin", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("tokens_balance", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_used_month", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "assistants",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("provider", sa.String(20), nullable=False, server_default="openai"),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("system_prompt", sa.Text, nullable=False, server_default=""),
        sa.Column("temperature", sa.Float, nullable=False, server_default="0.7"),
        sa.Column("max_tokens", sa.Integer, nullable=False, server_default="2000"),
        sa.Column("top_p", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("frequency_penalty", sa.Float, nullable=False, server_default="0"),
        sa.Column("presence_penalty", sa.Float, nullable=False, server_default="0"),
        sa.Column("response_format", sa.String(20), nullable=False, server_default="text"),
        sa.Column("stop_sequences", sa.Text),
        sa.Column("seed", sa.Integer),
        sa.Column("context_messages", sa.Integer, nullable=False, server_default="10"),
        sa.Column("filter_unsafe_content", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("include_user_id", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("use_knowledge_base", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reasoning_effort", sa.String(10)),
        sa.Column("openai_assistant_id", sa.String(100)),
        sa.Column("openai_vector_store_id", sa.String(100)),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("sort_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("assistant_id", sa.Integer, sa.ForeignKey("assistants.id")),
        sa.Column("type", sa.String(20), nullable=False, server_default="user_chat"),
        sa.Column("title", sa.String(255)),
        sa.Column("total_tokens_input", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_tokens_output", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
        sa.Column("archived_at", sa.DateTime(timezone=True)),
        sa.Column("openai_thread_id", sa.String(100)),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_conversations_user_id", "conversations", ["user_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "conversation_id",
            sa.Integer,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("tokens_input", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_output", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])

    op.create_table(
        "token_usage",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("turn_id", sa.String(64), nullable=False),
        sa.Column("subject_type", sa.String(10), nullable=False),
        sa.Column("subject_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("model", sa.String(100)),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("tokens_input", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_output", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("turn_id", name="uq_token_usage_turn_id"),
    )
    op.create_index("ix_token_usage_subject_id", "token_usage", ["subject_id"])


def downgrade():
    op.drop_index("ix_token_usage_subject_id", table_name="token_usage")
    op.drop_table("token_usage")
    op.drop_index("ix_messages_conversation_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_user_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("assistants")
    op.drop_table("users")
