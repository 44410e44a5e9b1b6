import logging

from sqlalchemy.exc import IntegrityError

from agency_portal.errors import Conflict, NotFound
from agency_portal.models import (
    db, get_now, ContractSignature, OnboardingFlow, OnboardingNode, OnboardingProgress,
    Organization, OrgMember, FLOW_STATUS_PUBLISHED, PROGRESS_COMPLETED, ROLE_MEMBER, ADMIN_ROLES,
)
from agency_portal.services.onboarding_steps import StepContext, handler_for

logger = logging.getLogger(__name__)


def get_published_flow(org_id):
    return OnboardingFlow.query.filter_by(org_id=org_id, status=FLOW_STATUS_PUBLISHED) \
        .order_by(OnboardingFlow.version.desc()).first()


def ordered_nodes(flow):
    if flow is None:
        return []
    return OnboardingNode.query.filter_by(flow_id=flow.id) \
        .order_by(OnboardingNode.order_index.asc(), OnboardingNode.id.asc()).all()


def completed_node_ids(org_id, user_id):
    rows = OnboardingProgress.query.filter_by(org_id=org_id, user_id=user_id, status=PROGRESS_COMPLETED).all()
    return {row.node_id for row in rows}


def get_progress(org_id, user_id):
    return OnboardingProgress.query.filter_by(org_id=org_id, user_id=user_id).all()


def record_completion(org_id, node_id, user_id, metadata=None):
    """
    Upserts the (node, user) progress row as completed.

    Calling it again is a no-op apart from replacing metadata when new metadata
    is given; `completed_at` keeps the first completion time.
    """
    progress = OnboardingProgress.query.filter_by(node_id=node_id, user_id=user_id).first()
    if progress is None:
        progress = OnboardingProgress(org_id=org_id, node_id=node_id, user_id=user_id)
        db.session.add(progress)
        try:
            _mark_completed(progress, metadata)
            db.session.commit()
            return progress
        except IntegrityError:
            # Concurrent request inserted the same (node, user) row first
            db.session.rollback()
            logger.info("Progress row for node %s user %s already exists, updating", node_id, user_id)
            progress = OnboardingProgress.query.filter_by(node_id=node_id, user_id=user_id).one()

    _mark_completed(progress, metadata)
    db.session.commit()
    return progress


def _mark_completed(progress, metadata):
    progress.status = PROGRESS_COMPLETED
    if progress.completed_at is None:
        progress.completed_at = get_now()
    if metadata is not None:
        progress.meta = dict(metadata)
    elif progress.meta is None:
        progress.meta = {}


def next_step(org_id, user_id):
    """Lowest-order node of the published flow without a completed row, or None."""
    done = completed_node_ids(org_id, user_id)
    for node in ordered_nodes(get_published_flow(org_id)):
        if node.id not in done:
            return node
    return None


def is_onboarding_complete(org_id, user_id):
    org = db.session.get(Organization, org_id)
    if org is None or not org.onboarding_enabled:
        return True
    flow = get_published_flow(org_id)
    if flow is None:
        return True
    done = completed_node_ids(org_id, user_id)
    return all(node.id in done for node in ordered_nodes(flow) if node.required)


def get_node_for_org(org_id, node_id):
    node = OnboardingNode.query.filter_by(id=node_id, org_id=org_id).first()
    if node is None:
        raise NotFound("Onboarding step not found")
    return node


def get_signature(node_id, user_id):
    return ContractSignature.query.filter_by(node_id=node_id, user_id=user_id) \
        .order_by(ContractSignature.signed_at.asc()).first()


def build_step_context(org, user, node):
    emails = invoice_emails(org.id, user)
    return StepContext(
        org=org,
        user=user,
        completed=node.id in completed_node_ids(org.id, user.id),
        member_email=emails['member_email'],
        admin_email=emails['admin_email'],
        signature=get_signature(node.id, user.id) if node.type == 'contract' else None,
    )


def invoice_emails(org_id, user):
    admin = OrgMember.query.filter(OrgMember.org_id == org_id, OrgMember.role.in_(ADMIN_ROLES)) \
        .order_by(OrgMember.created_at.asc(), OrgMember.id.asc()).first()
    membership = user.membership_for(org_id) if user is not None else None
    return {
        'admin_email': admin.user.email if admin else None,
        'member_email': user.email if membership and membership.role == ROLE_MEMBER else None,
    }


def ensure_current_step(org_id, user_id, node):
    """Steps complete in order; re-completing a finished step is allowed."""
    if node.id in completed_node_ids(org_id, user_id):
        return
    current = next_step(org_id, user_id)
    if current is None or current.id != node.id:
        raise Conflict("Please complete the previous onboarding steps first.")


def complete_step(org, user, node_id, submission):
    """
    Validates a completion request against the step's rules and records it.

    Validation runs before anything is written, so a rejected request leaves
    no progress row behind.
    """
    node = get_node_for_org(org.id, node_id)
    if node.flow is None or node.flow.status != FLOW_STATUS_PUBLISHED:
        raise Conflict("This onboarding flow is not published.")
    ensure_current_step(org.id, user.id, node)

    handler = handler_for(node.type)
    ctx = build_step_context(org, user, node)
    handler.check_completion(node, submission, ctx)
    metadata = handler.completion_metadata(node, submission)
    return record_completion(org.id, node.id, user.id, metadata)


def onboarding_status_for_members(org_id):
    flow = get_published_flow(org_id)
    nodes = ordered_nodes(flow)
    results = []
    for membership in OrgMember.query.filter_by(org_id=org_id).order_by(OrgMember.id.asc()).all():
        done = completed_node_ids(org_id, membership.user_id)
        completed = [node for node in nodes if node.id in done]
        results.append({
            'user_id': membership.user_id,
            'email': membership.user.email,
            'role': membership.role,
            'completed_nodes': len(completed),
            'total_nodes': len(nodes),
            'is_complete': is_onboarding_complete(org_id, membership.user_id),
        })
    return results
