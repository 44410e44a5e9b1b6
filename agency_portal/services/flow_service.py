import logging
import time

from flask import current_app
from sqlalchemy import func
from werkzeug.utils import secure_filename

from agency_portal.errors import Conflict, NotFound, ValidationError
from agency_portal.models import (
    db, get_now, OnboardingEdge, OnboardingFlow, OnboardingNode, OnboardingProgress,
    FLOW_STATUS_DRAFT, FLOW_STATUS_PUBLISHED,
)
from agency_portal.services.contract_composer import build_default_contract_html
from agency_portal.services.onboarding_steps import config_status, is_known_type
from agency_portal.services.supabase_service import StorageService

logger = logging.getLogger(__name__)

EDITABLE_NODE_FIELDS = ('title', 'description', 'required', 'config', 'position', 'order_index')


def get_flow(org_id, include_draft=False):
    query = OnboardingFlow.query.filter_by(org_id=org_id)
    if not include_draft:
        query = query.filter_by(status=FLOW_STATUS_PUBLISHED)
    return query.order_by(OnboardingFlow.updated_at.desc(), OnboardingFlow.id.desc()).first()


def get_flow_for_org(org_id, flow_id):
    flow = OnboardingFlow.query.filter_by(id=flow_id, org_id=org_id).first()
    if flow is None:
        raise NotFound("Flow not found")
    return flow


def flow_payload(flow):
    data = flow.to_dict()
    for node_data, node in zip(data['nodes'], flow.nodes):
        node_data['config_status'] = config_status(node)
    return data


def initialize_default_flow(org, name=None):
    """Creates the standard Welcome → Invoice → Agreement → Terms flow as a draft."""
    if OnboardingFlow.query.filter_by(org_id=org.id).first() is not None:
        raise Conflict("Flow already exists")

    flow = OnboardingFlow(org_id=org.id, name=name or 'Client Onboarding', status=FLOW_STATUS_DRAFT, version=0)
    db.session.add(flow)
    db.session.flush()

    defaults = [
        ('welcome', 'Welcome', 'Welcome to our onboarding process', {}),
        ('invoice', 'Invoice', 'Pay your first invoice to get started', {}),
        ('contract', 'Agreement', 'Review and sign the service agreement', {
            'html_content': build_default_contract_html(org.name),
            'signature_required': True,
        }),
        ('terms', 'Terms & Privacy', 'Accept our terms of service and privacy policy', {}),
    ]
    nodes = []
    for index, (node_type, title, description, config) in enumerate(defaults, start=1):
        node = OnboardingNode(
            flow_id=flow.id,
            org_id=org.id,
            type=node_type,
            title=title,
            description=description,
            required=True,
            config=config,
            position={'x': 100, 'y': 100 * index},
            order_index=index,
        )
        db.session.add(node)
        nodes.append(node)
    db.session.flush()

    for source, target in zip(nodes, nodes[1:]):
        db.session.add(OnboardingEdge(flow_id=flow.id, source_node_id=source.id, target_node_id=target.id))

    db.session.commit()
    logger.info("Initialized default onboarding flow %s for org %s", flow.id, org.id)
    return flow


def rename_flow(org_id, flow_id, name):
    if not (name or '').strip():
        raise ValidationError("Flow name is required")
    flow = get_flow_for_org(org_id, flow_id)
    flow.name = name.strip()
    db.session.commit()
    return flow


def publish_flow(org_id, flow_id):
    flow = get_flow_for_org(org_id, flow_id)
    if not flow.nodes:
        raise ValidationError("Add at least one step before publishing")
    flow.status = FLOW_STATUS_PUBLISHED
    flow.version = (flow.version or 0) + 1
    flow.published_at = get_now()
    db.session.commit()
    logger.info("Published onboarding flow %s v%s", flow.id, flow.version)
    return flow


def _check_node_fields(data):
    for key in ('config', 'position'):
        if data.get(key) is not None and not isinstance(data[key], dict):
            raise ValidationError(f"{key} must be an object")
    order_index = data.get('order_index')
    if order_index is not None and (isinstance(order_index, bool) or not isinstance(order_index, int)):
        raise ValidationError("order_index must be an integer")


def create_node(org_id, data):
    flow = get_flow_for_org(org_id, data.get('flow_id'))
    _check_node_fields(data)
    node_type = data.get('type')
    if not node_type:
        raise ValidationError("Node type is required")
    if not is_known_type(node_type):
        logger.warning("Creating onboarding node with unknown type %r", node_type)

    order_index = data.get('order_index')
    if order_index is None:
        current_max = db.session.query(func.max(OnboardingNode.order_index)).filter_by(flow_id=flow.id).scalar()
        order_index = (current_max or 0) + 1

    node = OnboardingNode(
        flow_id=flow.id,
        org_id=org_id,
        type=node_type,
        title=data.get('title') or '',
        description=data.get('description'),
        required=data.get('required', True),
        config=data.get('config') or {},
        position=data.get('position') or {'x': 0, 'y': 0},
        order_index=order_index,
    )
    db.session.add(node)
    db.session.commit()
    return node


def get_node(org_id, node_id):
    node = OnboardingNode.query.filter_by(id=node_id, org_id=org_id).first()
    if node is None:
        raise NotFound("Node not found")
    return node


def update_node(org_id, node_id, data):
    node = get_node(org_id, node_id)
    _check_node_fields(data)
    for key in EDITABLE_NODE_FIELDS:
        if key in data:
            setattr(node, key, data[key])
    db.session.commit()
    return node


def delete_node(org_id, node_id):
    """Deletes the node with its edges and the progress rows pointing at it."""
    node = get_node(org_id, node_id)
    OnboardingEdge.query.filter(
        (OnboardingEdge.source_node_id == node.id) | (OnboardingEdge.target_node_id == node.id)
    ).delete(synchronize_session=False)
    removed = OnboardingProgress.query.filter_by(node_id=node.id).delete(synchronize_session=False)
    db.session.delete(node)
    db.session.commit()
    if removed:
        logger.info("Deleted node %s and %s progress rows", node_id, removed)


def reorder_nodes(org_id, flow_id, node_ids):
    flow = get_flow_for_org(org_id, flow_id)
    nodes = {node.id: node for node in flow.nodes}
    if set(node_ids) != set(nodes):
        raise ValidationError("nodeIds must list every node of the flow exactly once")
    for index, node_id in enumerate(node_ids, start=1):
        nodes[node_id].order_index = index
    db.session.commit()
    return flow


def create_edge(org_id, flow_id, source_node_id, target_node_id, condition=None):
    flow = get_flow_for_org(org_id, flow_id)
    node_ids = {node.id for node in flow.nodes}
    if source_node_id not in node_ids or target_node_id not in node_ids:
        raise ValidationError("Edge nodes must belong to the flow")
    if source_node_id == target_node_id:
        raise ValidationError("An edge cannot connect a node to itself")
    edge = OnboardingEdge(
        flow_id=flow.id,
        source_node_id=source_node_id,
        target_node_id=target_node_id,
        condition=condition,
    )
    db.session.add(edge)
    db.session.commit()
    return edge


def delete_edge(org_id, edge_id):
    edge = OnboardingEdge.query.join(OnboardingFlow).filter(
        OnboardingEdge.id == edge_id, OnboardingFlow.org_id == org_id
    ).first()
    if edge is None:
        raise NotFound("Edge not found")
    db.session.delete(edge)
    db.session.commit()


def upload_node_document(org_id, file, node_id=None):
    if file is None or not file.filename:
        raise ValidationError("No file provided")

    allowed = current_app.config['ALLOWED_DOCUMENT_TYPES']
    if file.mimetype not in allowed:
        raise ValidationError("Invalid file type. Allowed: PDF, PNG, JPEG, GIF, WEBP")

    content = file.read()
    max_size = current_app.config['MAX_DOCUMENT_SIZE']
    if len(content) > max_size:
        raise ValidationError(f"File too large. Maximum size is {max_size // (1024 * 1024)}MB")

    filename = secure_filename(file.filename) or 'document'
    path = f"{org_id}/{node_id or 'temp'}/{int(time.time() * 1000)}_{filename}"
    url = StorageService.upload(current_app.config['DOCUMENT_BUCKET'], path, content, file.mimetype)
    return {
        'url': url,
        'name': file.filename,
        'type': file.mimetype,
        'size': len(content),
    }
