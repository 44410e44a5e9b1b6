from datetime import datetime

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy


def get_now():
    return datetime.utcnow()


db = SQLAlchemy()

# Enums (plain strings for sqlite compatibility)
ROLE_OWNER = 'owner'
ROLE_ADMIN = 'admin'
ROLE_MEMBER = 'member'
ADMIN_ROLES = (ROLE_OWNER, ROLE_ADMIN)

FLOW_STATUS_DRAFT = 'draft'
FLOW_STATUS_PUBLISHED = 'published'

PROGRESS_PENDING = 'pending'
PROGRESS_COMPLETED = 'completed'

REPORT_STATUS_DRAFT = 'draft'
REPORT_STATUS_PUBLISHED = 'published'

SECTION_TYPES = [
    'summary', 'metrics', 'insights', 'recommendations',
    'next_steps', 'custom', 'proof_of_work',
]


class Organization(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    # Identity provider id (e.g. "org_2abc...")
    external_id = db.Column(db.String(100), unique=True, nullable=True)
    name = db.Column(db.String(150), nullable=False)
    onboarding_enabled = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=get_now)

    memberships = db.relationship('OrgMember', backref='organization', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'external_id': self.external_id,
            'name': self.name,
            'onboarding_enabled': self.onboarding_enabled,
        }


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    supabase_uid = db.Column(db.String(100), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)

    memberships = db.relationship('OrgMember', backref='user', lazy=True)

    def membership_for(self, org_id):
        for membership in self.memberships:
            if membership.org_id == org_id:
                return membership
        return None


class OrgMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_MEMBER)
    created_at = db.Column(db.DateTime, default=get_now)

    __table_args__ = (db.UniqueConstraint('org_id', 'user_id', name='uq_org_member'),)

    @property
    def is_admin(self):
        return self.role in ADMIN_ROLES


class OnboardingFlow(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    name = db.Column(db.String(150), nullable=False, default='Client Onboarding')
    status = db.Column(db.String(20), default=FLOW_STATUS_DRAFT)
    version = db.Column(db.Integer, default=0)
    published_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    nodes = db.relationship('OnboardingNode', backref='flow', lazy=True, cascade='all, delete-orphan',
                            order_by='OnboardingNode.order_index')
    edges = db.relationship('OnboardingEdge', backref='flow', lazy=True, cascade='all, delete-orphan')

    def to_dict(self, include_graph=True):
        data = {
            'id': self.id,
            'org_id': self.org_id,
            'name': self.name,
            'status': self.status,
            'version': self.version,
            'published_at': self.published_at.isoformat() if self.published_at else None,
        }
        if include_graph:
            data['nodes'] = [n.to_dict() for n in self.nodes]
            data['edges'] = [e.to_dict() for e in self.edges]
        return data


class OnboardingNode(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(db.Integer, db.ForeignKey('onboarding_flow.id'), nullable=False)
    # Redundant with flow.org_id, kept for tenant filtering
    org_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    type = db.Column(db.String(30), nullable=False)
    title = db.Column(db.String(200), nullable=False, default='')
    description = db.Column(db.Text, nullable=True)
    required = db.Column(db.Boolean, default=True)
    config = db.Column(db.JSON, nullable=True)
    position = db.Column(db.JSON, nullable=True)  # {"x": 0, "y": 0} for the flow builder canvas
    order_index = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=get_now)

    progress = db.relationship('OnboardingProgress', backref='node', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'flow_id': self.flow_id,
            'org_id': self.org_id,
            'type': self.type,
            'title': self.title,
            'description': self.description,
            'required': self.required,
            'config': self.config or {},
            'position': self.position or {'x': 0, 'y': 0},
            'order_index': self.order_index,
        }


class OnboardingEdge(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(db.Integer, db.ForeignKey('onboarding_flow.id'), nullable=False)
    source_node_id = db.Column(db.Integer, db.ForeignKey('onboarding_node.id'), nullable=False)
    target_node_id = db.Column(db.Integer, db.ForeignKey('onboarding_node.id'), nullable=False)
    condition = db.Column(db.JSON, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'flow_id': self.flow_id,
            'source_node_id': self.source_node_id,
            'target_node_id': self.target_node_id,
            'condition': self.condition,
        }


class OnboardingProgress(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    node_id = db.Column(db.Integer, db.ForeignKey('onboarding_node.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(20), default=PROGRESS_PENDING)
    completed_at = db.Column(db.DateTime, nullable=True)
    # JSON: {"terms_version": ..., "accepted_at": ...} or {"signature_id": ...}
    meta = db.Column('metadata', db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    __table_args__ = (db.UniqueConstraint('node_id', 'user_id', name='uq_progress_node_user'),)

    def to_dict(self):
        return {
            'id': self.id,
            'org_id': self.org_id,
            'node_id': self.node_id,
            'user_id': self.user_id,
            'status': self.status,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'metadata': self.meta or {},
        }


class ContractSignature(db.Model):
    __table_args__ = (db.UniqueConstraint('node_id', 'user_id', name='uq_signature_node_user'),)

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    node_id = db.Column(db.Integer, db.ForeignKey('onboarding_node.id', ondelete='SET NULL'), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    signed_name = db.Column(db.String(200), nullable=False)
    signature_image_url = db.Column(db.Text, nullable=False)  # public URL or inline data URL
    contract_sha256 = db.Column(db.String(64), nullable=False)
    contract_html = db.Column(db.Text, nullable=True)
    terms_version = db.Column(db.String(255), nullable=True)
    privacy_version = db.Column(db.String(255), nullable=True)
    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    signed_at = db.Column(db.DateTime, default=get_now)

    def to_dict(self):
        return {
            'id': self.id,
            'org_id': self.org_id,
            'node_id': self.node_id,
            'user_id': self.user_id,
            'signed_name': self.signed_name,
            'signature_image_url': self.signature_image_url,
            'contract_sha256': self.contract_sha256,
            'terms_version': self.terms_version,
            'privacy_version': self.privacy_version,
            'signed_at': self.signed_at.isoformat() if self.signed_at else None,
        }


class Metric(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    leads = db.Column(db.Integer, default=0)
    spend = db.Column(db.Float, default=0.0)
    revenue = db.Column(db.Float, default=0.0)
    website_traffic = db.Column(db.Integer, nullable=True)
    conversions = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)

    def to_dict(self):
        from agency_portal.services.metrics_service import derive_ratios

        data = {
            'id': self.id,
            'org_id': self.org_id,
            'period_start': self.period_start.isoformat(),
            'period_end': self.period_end.isoformat(),
            'leads': self.leads or 0,
            'spend': self.spend or 0.0,
            'revenue': self.revenue or 0.0,
            'website_traffic': self.website_traffic,
            'conversions': self.conversions,
        }
        data.update(derive_ratios(data['leads'], data['spend'], data['revenue'],
                                  self.website_traffic, self.conversions))
        return data


class Report(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), default=REPORT_STATUS_DRAFT)
    client_visible = db.Column(db.Boolean, default=True)
    # auto | kpi | csv | manual
    data_source = db.Column(db.String(20), default='manual')
    # Totals supplied by kpi/csv generation, exported alongside stored metrics
    kpi_snapshot = db.Column(db.JSON, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    published_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    sections = db.relationship('ReportSection', backref='report', lazy=True, cascade='all, delete-orphan',
                               order_by='ReportSection.order_index')

    def to_dict(self, include_sections=True):
        data = {
            'id': self.id,
            'org_id': self.org_id,
            'title': self.title,
            'period_start': self.period_start.isoformat(),
            'period_end': self.period_end.isoformat(),
            'status': self.status,
            'client_visible': self.client_visible,
            'data_source': self.data_source,
            'published_at': self.published_at.isoformat() if self.published_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_sections:
            data['sections'] = [s.to_dict() for s in self.sections]
        return data


class ReportSection(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(db.Integer, db.ForeignKey('report.id'), nullable=False)
    section_type = db.Column(db.String(30), nullable=False, default='custom')
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=True)
    order_index = db.Column(db.Integer, default=0)

    def to_dict(self):
        return {
            'id': self.id,
            'report_id': self.report_id,
            'section_type': self.section_type,
            'title': self.title,
            'content': self.content or '',
            'order_index': self.order_index,
        }


class Deliverable(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey('organization.id'), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(50), nullable=True)  # ad_creative, landing_page, report...
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(30), default='planned')
    client_visible = db.Column(db.Boolean, default=True)
    archived = db.Column(db.Boolean, default=False)
    due_date = db.Column(db.Date, nullable=True)
    assigned_to = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    file_url = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    assignee = db.relationship('User', foreign_keys=[assigned_to])

    def to_dict(self):
        return {
            'id': self.id,
            'org_id': self.org_id,
            'title': self.title,
            'type': self.type,
            'description': self.description,
            'status': self.status,
            'client_visible': self.client_visible,
            'archived': self.archived,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'assigned_to': self.assigned_to,
            'file_url': self.file_url,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
