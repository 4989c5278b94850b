"""
Webhook Routes — one ingress per provider, acknowledgment only.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from paycore.adapters.registry import AdapterRegistry, get_registry
from paycore.config import Settings, get_settings
from paycore.database import get_db
from paycore.schemas.schemas import WebhookAck
from paycore.services.webhook_reconciler import WebhookReconciler

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    registry: AdapterRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """Verify the signature over the raw body and reconcile the event."""
    raw_body = await request.body()
    # reconciliation is blocking database work
    reconciler = WebhookReconciler(db, registry, settings)
    await run_in_threadpool(reconciler.handle, provider, request.headers, raw_body)
    return WebhookAck(received=True)
