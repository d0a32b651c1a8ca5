from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

ATTRIBUTION_DIMENSIONS = (
    'ad_group', 'ad_type', 'affiliate', 'app', 'bid_match_type', 'brand', 'campaign',
    'campaign_identifier', 'content', 'content_identifier', 'creative', 'device_type',
    'experiment', 'keyword', 'match_type', 'medium', 'medium_identifier', 'network',
    'placement', 'position', 'search_term', 'source', 'subsource', 'target',
)


def upgrade():
    op.create_table(
        'cookies',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('cookie_id', sa.String(36), nullable=False),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_cookies_cookie_id', 'cookies', ['cookie_id'], unique=True)
    op.create_table(
        'user_agents',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_agent', sa.Text, nullable=False, unique=True),
        sa.Column('user_agent_type', sa.String(16), index=True),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_table(
        'domains',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('domain', sa.String(255), nullable=False, unique=True),
    )
    op.create_table(
        'paths',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('path', sa.Text, nullable=False, unique=True),
    )
    op.create_table(
        'query_strings',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('query_string', sa.Text, nullable=False, unique=True),
    )
    op.create_table(
        'attributions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('digest', sa.String(64), nullable=False),
        *[sa.Column(name, sa.String(255)) for name in ATTRIBUTION_DIMENSIONS],
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_attributions_digest', 'attributions', ['digest'], unique=True)
    op.create_table(
        'referers',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('domain_id', sa.Integer, sa.ForeignKey('domains.id'), nullable=False),
        sa.Column('path_id', sa.Integer, sa.ForeignKey('paths.id'), nullable=False),
        sa.Column('query_string_id', sa.Integer, sa.ForeignKey('query_strings.id'), nullable=False),
        sa.Column('attribution_id', sa.Integer, sa.ForeignKey('attributions.id'), nullable=False),
        sa.Column('created_at', sa.DateTime),
        sa.UniqueConstraint('domain_id', 'path_id', 'query_string_id', 'attribution_id', name='uq_referer_composite'),
    )
    op.create_table(
        'owners',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('owner', sa.String(255), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_table(
        'ownerships',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('cookie_id', sa.String(36), sa.ForeignKey('cookies.cookie_id'), nullable=False, index=True),
        sa.Column('owner_id', sa.Integer, sa.ForeignKey('owners.id'), nullable=False, index=True),
        sa.Column('created_at', sa.DateTime),
        sa.UniqueConstraint('cookie_id', 'owner_id', name='uq_ownership_cookie_owner'),
    )
    op.create_table(
        'visits',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('visit_id', sa.String(64), nullable=False),
        sa.Column('cookie_id', sa.String(36), sa.ForeignKey('cookies.cookie_id'), nullable=False, index=True),
        sa.Column('attribution_id', sa.Integer, sa.ForeignKey('attributions.id'), nullable=False, index=True),
        sa.Column('user_agent_id', sa.Integer, sa.ForeignKey('user_agents.id'), nullable=False),
        sa.Column('referer_id', sa.Integer, sa.ForeignKey('referers.id')),
        sa.Column('ip_address', sa.String(45)),
        sa.Column('domain_id', sa.Integer, sa.ForeignKey('domains.id')),
        sa.Column('raw_query_string', sa.Text),
        sa.Column('unaltered_ingress_url', sa.Text),
        sa.Column('owner_id', sa.Integer, sa.ForeignKey('owners.id'), index=True),
        sa.Column('created_at', sa.DateTime, index=True),
    )
    op.create_index('ix_visits_visit_id', 'visits', ['visit_id'], unique=True)
    op.create_table(
        'pageviews',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('visit_id', sa.String(64), sa.ForeignKey('visits.visit_id'), nullable=False, index=True),
        sa.Column('path', sa.Text, nullable=False),
        sa.Column('http_method', sa.String(16), nullable=False),
        sa.Column('mime_type', sa.String(255)),
        sa.Column('query_string', sa.Text),
        sa.Column('request_id', sa.String(64), index=True),
        sa.Column('click_id', sa.String(255)),
        sa.Column('pixel_cookie_id', sa.String(255)),
        sa.Column('http_status', sa.Integer),
        sa.Column('created_at', sa.DateTime, index=True),
        sa.Column('response_time_ms', sa.Float),
    )
    op.create_table(
        'events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('visit_id', sa.String(64), sa.ForeignKey('visits.visit_id'), nullable=False, index=True),
        sa.Column('pageview_id', sa.Integer, sa.ForeignKey('pageviews.id'), index=True),
        sa.Column('event_type', sa.String(128), nullable=False, index=True),
        sa.Column('meta', sa.JSON),
        sa.Column('request_id', sa.String(64)),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_event_visit_type', 'events', ['visit_id', 'event_type'])


def downgrade():
    op.drop_index('ix_event_visit_type', table_name='events')
    for table in ('events', 'pageviews'):
        op.drop_table(table)
    op.drop_index('ix_visits_visit_id', table_name='visits')
    for table in ('visits', 'ownerships', 'owners', 'referers'):
        op.drop_table(table)
    op.drop_index('ix_attributions_digest', table_name='attributions')
    for table in ('attributions', 'query_strings', 'paths', 'domains', 'user_agents'):
        op.drop_table(table)
    op.drop_index('ix_cookies_cookie_id', table_name='cookies')
    op.drop_table('cookies')
