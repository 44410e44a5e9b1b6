import logging
import time
from datetime import datetime, time as dt_time

from flask import current_app
from sqlalchemy import or_
from werkzeug.utils import secure_filename

from agency_portal.errors import NotFound, ValidationError, StorageError
from agency_portal.models import db, get_now, Deliverable
from agency_portal.services.supabase_service import StorageService
from agency_portal.utils import parse_date

logger = logging.getLogger(__name__)

STATUS_PLANNED = 'planned'
STATUS_IN_PROGRESS = 'in_progress'
STATUS_IN_REVIEW = 'in_review'
STATUS_APPROVED = 'approved'
STATUS_COMPLETE = 'complete'
STATUS_BLOCKED = 'blocked'
STATUS_REVISIONS = 'revisions_requested'

VALID_TRANSITIONS = {
    STATUS_PLANNED: [STATUS_IN_PROGRESS, STATUS_BLOCKED],
    STATUS_IN_PROGRESS: [STATUS_IN_REVIEW, STATUS_BLOCKED, STATUS_PLANNED],
    STATUS_IN_REVIEW: [STATUS_APPROVED, STATUS_REVISIONS, STATUS_BLOCKED],
    STATUS_APPROVED: [STATUS_COMPLETE, STATUS_IN_REVIEW],
    STATUS_COMPLETE: [],
    STATUS_BLOCKED: [STATUS_PLANNED, STATUS_IN_PROGRESS],
    STATUS_REVISIONS: [STATUS_IN_PROGRESS, STATUS_BLOCKED],
}
DONE_STATUSES = (STATUS_APPROVED, STATUS_COMPLETE)

STATUS_LABELS = {
    STATUS_PLANNED: 'Planned',
    STATUS_IN_PROGRESS: 'In Progress',
    STATUS_IN_REVIEW: 'In Review',
    STATUS_APPROVED: 'Approved',
    STATUS_COMPLETE: 'Complete',
    STATUS_BLOCKED: 'Blocked',
    STATUS_REVISIONS: 'Revisions Requested',
}


def can_transition(current_status, new_status):
    return new_status in VALID_TRANSITIONS.get(current_status, [])


def period_bounds(period_start, period_end):
    return datetime.combine(period_start, dt_time.min), datetime.combine(period_end, dt_time.max)


def get_deliverable(org_id, deliverable_id):
    deliverable = Deliverable.query.filter_by(id=deliverable_id, org_id=org_id).first()
    if deliverable is None:
        raise NotFound("Deliverable not found")
    return deliverable


def list_deliverables(org_id, client_view=False):
    query = Deliverable.query.filter_by(org_id=org_id, archived=False)
    if client_view:
        query = query.filter_by(client_visible=True)
    return query.order_by(Deliverable.created_at.desc()).all()


def create_deliverable(org_id, data):
    title = (data.get('title') or '').strip()
    if not title:
        raise ValidationError("Title is required")
    status = data.get('status') or STATUS_PLANNED
    if status not in VALID_TRANSITIONS:
        raise ValidationError(f"Invalid status: {status}")

    deliverable = Deliverable(
        org_id=org_id,
        title=title,
        type=data.get('type'),
        description=data.get('description'),
        status=status,
        client_visible=data.get('client_visible', True) not in (False, 'false', '0'),
        due_date=parse_date(data['due_date'], 'due_date') if data.get('due_date') else None,
        assigned_to=int(data['assigned_to']) if data.get('assigned_to') else None,
    )
    if status in DONE_STATUSES:
        deliverable.completed_at = get_now()
    db.session.add(deliverable)
    db.session.commit()
    return deliverable


def update_status(org_id, deliverable_id, new_status):
    deliverable = get_deliverable(org_id, deliverable_id)
    if not can_transition(deliverable.status, new_status):
        raise ValidationError(f"Cannot transition from {deliverable.status} to {new_status}")
    deliverable.status = new_status
    if new_status in DONE_STATUSES and deliverable.completed_at is None:
        deliverable.completed_at = get_now()
    db.session.commit()
    logger.info("Deliverable %s moved to %s", deliverable.id, new_status)
    return deliverable


def attach_file(org_id, deliverable, file):
    """Uploads a file for the deliverable; raises StorageError without touching the row."""
    content = file.read()
    if len(content) > current_app.config['MAX_DOCUMENT_SIZE']:
        raise StorageError("File too large")
    filename = secure_filename(file.filename or '') or 'file'
    path = f"{org_id}/{deliverable.id}/{int(time.time() * 1000)}_{filename}"
    deliverable.file_url = StorageService.upload(
        current_app.config['DELIVERABLE_BUCKET'], path, content, file.mimetype or 'application/octet-stream'
    )
    db.session.commit()
    return deliverable


def create_with_file(org_id, data, file=None):
    """
    Creates the deliverable, then uploads its file.

    Returns (deliverable, warning). A failed upload keeps the deliverable and
    reports the failure as a warning so the upload can be retried separately.
    """
    deliverable = create_deliverable(org_id, data)
    if file is None or not file.filename:
        return deliverable, None
    try:
        attach_file(org_id, deliverable, file)
    except StorageError as e:
        db.session.rollback()
        logger.warning("Deliverable %s created but upload failed: %s", deliverable.id, e.message)
        return deliverable, f"Deliverable created but file upload failed: {e.message}"
    return deliverable, None


def completed_in_period(org_id, period_start, period_end):
    """Client-visible deliverables approved or completed within the period."""
    start, end = period_bounds(period_start, period_end)
    return Deliverable.query.filter(
        Deliverable.org_id == org_id,
        Deliverable.archived.is_(False),
        Deliverable.client_visible.is_(True),
        Deliverable.status.in_(DONE_STATUSES),
        Deliverable.completed_at >= start,
        Deliverable.completed_at <= end,
    ).order_by(Deliverable.completed_at.asc()).all()


def created_in_period(org_id, period_start, period_end):
    start, end = period_bounds(period_start, period_end)
    return Deliverable.query.filter(
        Deliverable.org_id == org_id,
        Deliverable.archived.is_(False),
        Deliverable.created_at >= start,
        Deliverable.created_at <= end,
    ).order_by(Deliverable.created_at.desc()).all()


def open_deliverables(org_id):
    return Deliverable.query.filter(
        Deliverable.org_id == org_id,
        Deliverable.archived.is_(False),
        or_(Deliverable.status.notin_(DONE_STATUSES), Deliverable.status.is_(None)),
    ).order_by(Deliverable.due_date.is_(None), Deliverable.due_date.asc(), Deliverable.id.asc()).all()
