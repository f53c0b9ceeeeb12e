"""Baseline migration - all zernflow tables

Revision ID: 0001_baseline
Revises: 
Create Date: 2026-10-19

Creates workspaces, channels, contacts, conversations, flows, the job
store, sequences, broadcasts, outbound webhooks and analytics.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create every table."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Workspaces
    # ==========================================================================
    op.execute('''
        CREATE TABLE workspaces (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) NOT NULL,
            late_api_key_encrypted TEXT,
            ai_api_key_encrypted TEXT,
            ai_provider VARCHAR(30),
            auto_assign_mode VARCHAR(20) NOT NULL DEFAULT 'manual',
            last_assigned_member_index INTEGER NOT NULL DEFAULT -1,
            global_keywords JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE workspace_members (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            user_id UUID NOT NULL,
            role VARCHAR(20) NOT NULL DEFAULT 'member',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_workspace_member UNIQUE (workspace_id, user_id)
        )
    ''')
    op.execute('CREATE INDEX idx_workspace_members_ws_created ON workspace_members(workspace_id, created_at)')

    op.execute('''
        CREATE TABLE bot_fields (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            name VARCHAR(100) NOT NULL,
            value TEXT,
            CONSTRAINT uq_bot_field_name UNIQUE (workspace_id, name)
        )
    ''')

    # ==========================================================================
    # Channels
    # ==========================================================================
    op.execute('''
        CREATE TABLE channels (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            platform VARCHAR(20) NOT NULL,
            late_account_id VARCHAR(255) NOT NULL,
            username VARCHAR(255),
            display_name VARCHAR(255),
            webhook_secret TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            last_comment_cursor TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_channels_account ON channels(late_account_id)')
    op.execute('CREATE INDEX idx_channels_workspace ON channels(workspace_id)')

    # ==========================================================================
    # Contacts
    # ==========================================================================
    op.execute('''
        CREATE TABLE contacts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            display_name VARCHAR(255),
            first_name VARCHAR(100),
            last_name VARCHAR(100),
            avatar_url TEXT,
            is_subscribed BOOLEAN NOT NULL DEFAULT true,
            last_interaction_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_contacts_workspace_subscribed ON contacts(workspace_id, is_subscribed)')

    op.execute('''
        CREATE TABLE contact_channels (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            channel_id UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
            platform_sender_id VARCHAR(255) NOT NULL,
            platform_username VARCHAR(255),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_contact_channel_sender UNIQUE (channel_id, platform_sender_id)
        )
    ''')
    op.execute('CREATE INDEX idx_contact_channels_contact ON contact_channels(contact_id)')

    op.execute('''
        CREATE TABLE tags (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            name VARCHAR(100) NOT NULL,
            color VARCHAR(20),
            CONSTRAINT uq_tag_name UNIQUE (workspace_id, name)
        )
    ''')

    op.execute('''
        CREATE TABLE contact_tags (
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            tag_id UUID NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (contact_id, tag_id)
        )
    ''')

    op.execute('''
        CREATE TABLE custom_field_definitions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            name VARCHAR(100) NOT NULL,
            slug VARCHAR(100) NOT NULL,
            field_type VARCHAR(20) NOT NULL DEFAULT 'text',
            CONSTRAINT uq_custom_field_slug UNIQUE (workspace_id, slug)
        )
    ''')

    op.execute('''
        CREATE TABLE contact_custom_fields (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            field_id UUID NOT NULL REFERENCES custom_field_definitions(id) ON DELETE CASCADE,
            value TEXT,
            CONSTRAINT uq_contact_custom_field UNIQUE (contact_id, field_id)
        )
    ''')

    # ==========================================================================
    # Conversations and messages
    # ==========================================================================
    op.execute('''
        CREATE TABLE conversations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            channel_id UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            platform VARCHAR(20) NOT NULL,
            late_conversation_id VARCHAR(255),
            status VARCHAR(20) NOT NULL DEFAULT 'open',
            assigned_to UUID,
            is_automation_paused BOOLEAN NOT NULL DEFAULT false,
            last_message_at TIMESTAMPTZ,
            last_message_preview VARCHAR(100),
            unread_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_conversation_channel_contact UNIQUE (channel_id, contact_id)
        )
    ''')
    op.execute('CREATE INDEX idx_conversations_workspace_last ON conversations(workspace_id, last_message_at)')

    op.execute('''
        CREATE TABLE messages (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            direction VARCHAR(10) NOT NULL,
            text TEXT,
            attachments JSONB,
            quick_reply_payload TEXT,
            postback_payload TEXT,
            callback_data TEXT,
            late_message_id VARCHAR(255),
            platform_message_id VARCHAR(255),
            sent_by_flow_id UUID,
            sent_by_node_id VARCHAR(100),
            sent_by_sequence_id UUID,
            status VARCHAR(20) NOT NULL,
            error_message TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_messages_late_message_id UNIQUE (late_message_id)
        )
    ''')
    op.execute('CREATE INDEX idx_messages_conversation_created ON messages(conversation_id, created_at)')

    # ==========================================================================
    # Flows, triggers and sessions
    # ==========================================================================
    op.execute('''
        CREATE TABLE flows (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            name VARCHAR(200) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'draft',
            nodes JSONB NOT NULL DEFAULT '[]'::jsonb,
            edges JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_flows_workspace_status ON flows(workspace_id, status)')

    op.execute('''
        CREATE TABLE triggers (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            flow_id UUID NOT NULL REFERENCES flows(id) ON DELETE CASCADE,
            channel_id UUID REFERENCES channels(id) ON DELETE CASCADE,
            type VARCHAR(30) NOT NULL,
            config JSONB NOT NULL DEFAULT '{}'::jsonb,
            priority INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_triggers_flow ON triggers(flow_id)')

    op.execute('''
        CREATE TABLE flow_sessions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            flow_id UUID NOT NULL REFERENCES flows(id) ON DELETE CASCADE,
            channel_id UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
            conversation_id UUID REFERENCES conversations(id) ON DELETE SET NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            current_node_id VARCHAR(100),
            variables JSONB NOT NULL DEFAULT '{}'::jsonb,
            flow_stack JSONB NOT NULL DEFAULT '[]'::jsonb,
            waiting_until TIMESTAMPTZ,
            waiting_for_input BOOLEAN NOT NULL DEFAULT false,
            resume_job_id UUID,
            human_takeover_at TIMESTAMPTZ,
            error VARCHAR(500),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ
        )
    ''')
    op.execute('CREATE INDEX idx_flow_sessions_contact_channel ON flow_sessions(contact_id, channel_id, status)')

    op.execute('''
        CREATE TABLE analytics_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            flow_id UUID,
            contact_id UUID,
            event_type VARCHAR(50) NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_analytics_workspace_type_created ON analytics_events(workspace_id, event_type, created_at)')

    op.execute('''
        CREATE TABLE comment_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            channel_id UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
            platform_comment_id VARCHAR(255) NOT NULL,
            post_id VARCHAR(255),
            author_id VARCHAR(255),
            author_name VARCHAR(255),
            comment_text VARCHAR(2000),
            trigger_id UUID,
            flow_id UUID,
            contact_id UUID,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_comment_log UNIQUE (channel_id, platform_comment_id)
        )
    ''')

    # ==========================================================================
    # Job store
    # ==========================================================================
    op.execute('''
        CREATE TABLE scheduled_jobs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID REFERENCES workspaces(id) ON DELETE CASCADE,
            job_type VARCHAR(50) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}'::jsonb,
            run_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            idempotency_key VARCHAR(255)
        )
    ''')
    op.execute("CREATE INDEX idx_scheduled_jobs_pending ON scheduled_jobs(status, run_at) WHERE status = 'pending'")
    op.execute('CREATE INDEX idx_scheduled_jobs_processing ON scheduled_jobs(status, started_at)')
    op.execute('CREATE UNIQUE INDEX uq_scheduled_job_idempotency ON scheduled_jobs(idempotency_key)')

    # ==========================================================================
    # Sequences
    # ==========================================================================
    op.execute('''
        CREATE TABLE sequences (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            name VARCHAR(200) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'draft',
            steps JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE sequence_enrollments (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            sequence_id UUID NOT NULL REFERENCES sequences(id) ON DELETE CASCADE,
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            channel_id UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
            current_step_index INTEGER NOT NULL DEFAULT 0,
            next_step_at TIMESTAMPTZ,
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            enrolled_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ
        )
    ''')
    op.execute('CREATE INDEX idx_sequence_enrollments_due ON sequence_enrollments(status, next_step_at)')
    op.execute('CREATE INDEX idx_sequence_enrollments_contact ON sequence_enrollments(sequence_id, contact_id)')

    # ==========================================================================
    # Broadcasts
    # ==========================================================================
    op.execute('''
        CREATE TABLE broadcasts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            name VARCHAR(200) NOT NULL,
            channel_id UUID REFERENCES channels(id) ON DELETE SET NULL,
            message_content JSONB NOT NULL DEFAULT '{}'::jsonb,
            segment_filter JSONB,
            status VARCHAR(20) NOT NULL DEFAULT 'draft',
            scheduled_for TIMESTAMPTZ,
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            total_recipients INTEGER NOT NULL DEFAULT 0,
            sent INTEGER NOT NULL DEFAULT 0,
            delivered INTEGER NOT NULL DEFAULT 0,
            failed INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_broadcasts_status_scheduled ON broadcasts(status, scheduled_for)')

    op.execute('''
        CREATE TABLE broadcast_recipients (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            broadcast_id UUID NOT NULL REFERENCES broadcasts(id) ON DELETE CASCADE,
            contact_id UUID NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            channel_id UUID NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            sent_at TIMESTAMPTZ,
            error_message TEXT,
            CONSTRAINT uq_broadcast_recipient UNIQUE (broadcast_id, contact_id)
        )
    ''')
    op.execute('CREATE INDEX idx_broadcast_recipients_status ON broadcast_recipients(broadcast_id, status)')

    # ==========================================================================
    # Outbound webhooks
    # ==========================================================================
    op.execute('''
        CREATE TABLE webhook_endpoints (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            url TEXT NOT NULL,
            events JSONB NOT NULL DEFAULT '[]'::jsonb,
            secret VARCHAR(255),
            is_active BOOLEAN NOT NULL DEFAULT true,
            failure_count INTEGER NOT NULL DEFAULT 0,
            last_triggered_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_webhook_endpoints_ws_active ON webhook_endpoints(workspace_id, is_active)')


def downgrade() -> None:
    """Drop every table (reverse dependency order)."""
    for table in (
        'webhook_endpoints',
        'broadcast_recipients',
        'broadcasts',
        'sequence_enrollments',
        'sequences',
        'scheduled_jobs',
        'comment_logs',
        'analytics_events',
        'flow_sessions',
        'triggers',
        'flows',
        'messages',
        'conversations',
        'contact_custom_fields',
        'custom_field_definitions',
        'contact_tags',
        'tags',
        'contact_channels',
        'contacts',
        'channels',
        'bot_fields',
        'workspace_members',
        'workspaces',
    ):
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
