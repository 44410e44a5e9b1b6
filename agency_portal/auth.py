import logging
from functools import wraps

import jwt
from flask import Blueprint, current_app, g
from flask_login import current_user, login_required
from sqlalchemy.exc import SQLAlchemyError

from agency_portal.errors import NotFound, PermissionDenied
from agency_portal.models import db, Organization, OrgMember, User
from agency_portal.utils import api_response

logger = logging.getLogger(__name__)

auth = Blueprint('auth', __name__)

REFRESH_MESSAGE = "Something went wrong while loading your workspace. Please refresh the page."


def decode_token(token):
    return jwt.decode(
        token,
        current_app.config['SUPABASE_JWT_SECRET'],
        algorithms=["HS256"],
        options={"verify_aud": False},
    )


def load_user_from_request(request):
    """Flask-Login request loader: `Authorization: Bearer <supabase access token>`."""
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    token = header.split(' ', 1)[1].strip()
    try:
        payload = decode_token(token)
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired access token")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning("Rejected invalid access token: %s", e)
        return None

    subject = payload.get('sub')
    if not subject:
        return None
    return User.query.filter_by(supabase_uid=subject).first()


def resolve_org(org_ref):
    """Organizations are addressed by internal id or by the identity provider's id."""
    org = None
    if str(org_ref).isdigit():
        org = db.session.get(Organization, int(org_ref))
    if org is None:
        org = Organization.query.filter_by(external_id=str(org_ref)).first()
    if org is None:
        raise NotFound("Organization not found")
    return org


def org_member_required(f):
    """
    Resolves `org_ref` from the URL into `g.org` and the viewer's membership
    into `g.membership`; the view receives the organization as `org`.
    """
    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        org_ref = kwargs.pop('org_ref')
        try:
            org = resolve_org(org_ref)
            membership = OrgMember.query.filter_by(org_id=org.id, user_id=current_user.id).first()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("Role resolution failed for org %s", org_ref)
            return api_response(False, error=REFRESH_MESSAGE, status=500)

        if membership is None:
            raise PermissionDenied("Not a member of this organization")
        g.org = org
        g.membership = membership
        return f(*args, org=org, **kwargs)
    return decorated


def admin_required(f):
    """Must be stacked under org_member_required."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not g.membership.is_admin:
            raise PermissionDenied("Admin access required")
        return f(*args, **kwargs)
    return decorated


def viewer_is_admin():
    return bool(getattr(g, 'membership', None) and g.membership.is_admin)


@auth.route('/api/me/orgs')
@login_required
def my_orgs():
    try:
        memberships = OrgMember.query.filter_by(user_id=current_user.id).order_by(OrgMember.id.asc()).all()
        data = [{
            'org': m.organization.to_dict(),
            'role': m.role,
            'is_admin': m.is_admin,
        } for m in memberships]
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Role resolution failed for user %s", current_user.id)
        return api_response(False, error=REFRESH_MESSAGE, status=500)

    return api_response(data={
        'user': {'id': current_user.id, 'email': current_user.email, 'name': current_user.name},
        'memberships': data,
    })
