"""
Order API Routes

Team leader: every order, create.
Editor: only orders assigned to them; start and complete their own.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.db.orders import OrderNotFoundError, PermissionDeniedError, TransitionError
from app.observability import get_logger
from app.schemas import EditorRole, NewOrder, Order
from app.web.deps import get_workspace, require_signed_in, require_team_leader
from app.web.workspace import DeskSession, Workspace


router = APIRouter(prefix="/api/orders", tags=["Orders API"])

logger = get_logger(__name__)


def _visible(session: DeskSession, order: Order) -> bool:
    return session.role == EditorRole.TEAM_LEADER or order.assigned_to_email == session.identity.email


@router.get("", response_model=list[Order])
async def list_orders(
    q: Optional[str] = None,
    session: DeskSession = Depends(require_signed_in),
    workspace: Workspace = Depends(get_workspace),
):
    """Orders newest first, optionally filtered by a search term."""
    assigned = None if session.role == EditorRole.TEAM_LEADER else session.identity.email
    return workspace.orders.list_orders(assigned_to_email=assigned, search=q)


@router.post("", response_model=Order, status_code=201)
async def create_order(
    body: NewOrder,
    session: DeskSession = Depends(require_team_leader),
    workspace: Workspace = Depends(get_workspace),
):
    """Create a pending order (team leader only)."""
    try:
        order = workspace.orders.create_order(body, session.role)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    logger.info("Order created", order_id=order.id, assignee=order.assigned_to_email)
    return order


@router.get("/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    session: DeskSession = Depends(require_signed_in),
    workspace: Workspace = Depends(get_workspace),
):
    try:
        order = workspace.orders.get_order(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    if not _visible(session, order):
        # Editors cannot tell other editors' orders from missing ones
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.post("/{order_id}/start", response_model=Order)
async def start_order(
    order_id: str,
    session: DeskSession = Depends(require_signed_in),
    workspace: Workspace = Depends(get_workspace),
):
    """pending -> in-progress"""
    return _transition(workspace.orders.start_order, session, order_id)


@router.post("/{order_id}/complete", response_model=Order)
async def complete_order(
    order_id: str,
    session: DeskSession = Depends(require_signed_in),
    workspace: Workspace = Depends(get_workspace),
):
    """pending | in-progress -> completed"""
    return _transition(workspace.orders.complete_order, session, order_id)


def _transition(move, session: DeskSession, order_id: str) -> Order:
    try:
        return move(order_id, session.identity, session.role)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except TransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
