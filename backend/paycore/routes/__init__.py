from paycore.routes.payment import router as payment_router
from paycore.routes.webhook import router as webhook_router
from paycore.routes.stp import router as stp_router

__all__ = ["payment_router", "webhook_router", "stp_router"]
