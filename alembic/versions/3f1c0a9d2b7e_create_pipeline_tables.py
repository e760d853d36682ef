"""Create upload, job, master record, classification cache and concept tables

Revision ID: 3f1c0a9d2b7e
Revises:
Create Date: 2026-10-12 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c0a9d2b7e'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _count(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=True)


def _stat(name: str, scale: int = 4) -> sa.Column:
    return sa.Column(name, sa.Numeric(19, scale), nullable=True)


def upgrade() -> None:
    """Upgrade schema."""

    op.create_table('uploads',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('blob_key', sa.String(), nullable=False, comment='Key of the stored spreadsheet'),
        sa.Column('original_name', sa.String(), nullable=False),
        sa.Column('store', sa.String(length=20), nullable=True, comment='Blob backend that holds the file'),
        sa.Column('content_type', sa.String(length=100), nullable=True),
        sa.Column('size', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default='NOW()', nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('jobs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('upload_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, comment='queued, running, completed or failed'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('rows_total', sa.Integer(), nullable=True),
        sa.Column('rows_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cursor', sa.Integer(), nullable=False, server_default='0', comment='Index of the next row to process'),
        sa.Column('output_blob_key', sa.String(), nullable=True),
        sa.Column('tokens_in', sa.Integer(), nullable=True),
        sa.Column('tokens_out', sa.Integer(), nullable=True),
        sa.Column('last_heartbeat', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('locked_by', sa.String(), nullable=True),
        sa.Column('locked_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('restarted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default='NOW()', nullable=True),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('finished_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['upload_id'], ['uploads.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_jobs_status_heartbeat', 'jobs', ['status', 'last_heartbeat'], unique=False)

    op.create_table('master_records',
        sa.Column('pair_id', sa.String(), nullable=False),
        sa.Column('concept_a', sa.String(length=255), nullable=False),
        sa.Column('code_a', sa.String(length=20), nullable=False),
        sa.Column('system_a', sa.String(length=20), nullable=False),
        sa.Column('type_a', sa.String(length=20), nullable=True),
        sa.Column('concept_b', sa.String(length=255), nullable=False),
        sa.Column('code_b', sa.String(length=20), nullable=False),
        sa.Column('system_b', sa.String(length=20), nullable=False),
        sa.Column('type_b', sa.String(length=20), nullable=True),
        _count('cooc_obs'),
        _count('cooc_event_count'),
        _count('a_before_b'),
        _count('same_day'),
        _count('b_before_a'),
        _count('n_a'),
        _count('n_b'),
        _count('total_persons'),
        _stat('expected_obs', 2),
        _stat('lift'),
        _stat('lift_lower_95'),
        _stat('lift_upper_95'),
        _stat('z_score'),
        _stat('ab_h', 2),
        _stat('a_only_h', 2),
        _stat('b_only_h', 2),
        _stat('neither_h', 2),
        _stat('odds_ratio'),
        _stat('or_lower_95'),
        _stat('or_upper_95'),
        _stat('directionality_ratio'),
        _stat('dir_prop_a_before_b'),
        _stat('dir_lower_95'),
        _stat('dir_upper_95'),
        _stat('confidence_a_to_b'),
        _stat('confidence_b_to_a'),
        sa.Column('relationship_type', sa.String(length=64), nullable=False),
        sa.Column('relationship_code', sa.Integer(), nullable=False),
        sa.Column('rationale', sa.String(length=1024), nullable=False),
        sa.Column('source_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('llm_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('llm_name', sa.String(length=100), nullable=True),
        sa.Column('llm_version', sa.String(length=50), nullable=True),
        sa.Column('human_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('human_reviewer', sa.String(length=254), nullable=True),
        sa.Column('human_comment', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=12), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default='NOW()', nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default='NOW()', nullable=False),
        sa.PrimaryKeyConstraint('pair_id')
    )
    op.create_index('ix_master_records_code_a_system_a', 'master_records', ['code_a', 'system_a'], unique=False)
    op.create_index('ix_master_records_code_b_system_b', 'master_records', ['code_b', 'system_b'], unique=False)

    op.create_table('llm_cache',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('prompt_key', sa.String(length=64), nullable=False, comment='SHA-256 of the classification inputs'),
        sa.Column('result', sa.Text(), nullable=False, comment='JSON classification result'),
        sa.Column('tokens_in', sa.Integer(), nullable=True),
        sa.Column('tokens_out', sa.Integer(), nullable=True),
        sa.Column('model', sa.String(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default='NOW()', nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('prompt_key')
    )

    op.create_table('concepts',
        sa.Column('concept_id', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('concept_name', sa.String(length=255), nullable=False),
        sa.Column('domain_id', sa.String(length=20), nullable=False),
        sa.Column('vocabulary_id', sa.String(length=20), nullable=False),
        sa.Column('concept_class_id', sa.String(length=20), nullable=False),
        sa.Column('standard_concept', sa.CHAR(length=1), nullable=True),
        sa.Column('concept_code', sa.String(length=50), nullable=False),
        sa.Column('valid_start_date', sa.Date(), nullable=False),
        sa.Column('valid_end_date', sa.Date(), nullable=False),
        sa.Column('invalid_reason', sa.CHAR(length=1), nullable=True),
        sa.PrimaryKeyConstraint('concept_id')
    )
    op.create_index('ux_concepts_vocabulary_code', 'concepts', ['vocabulary_id', 'concept_code'], unique=True)
    op.create_index('ix_concepts_domain', 'concepts', ['domain_id'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_concepts_domain', table_name='concepts')
    op.drop_index('ux_concepts_vocabulary_code', table_name='concepts')
    op.drop_table('concepts')
    op.drop_table('llm_cache')
    op.drop_index('ix_master_records_code_b_system_b', table_name='master_records')
    op.drop_index('ix_master_records_code_a_system_a', table_name='master_records')
    op.drop_table('master_records')
    op.drop_index('ix_jobs_status_heartbeat', table_name='jobs')
    op.drop_table('jobs')
    op.drop_table('uploads')
