from paycore.models.payment import PaymentRecord

__all__ = ["PaymentRecord"]
