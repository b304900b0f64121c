from .payment_workflow import PaymentWorkflow

__all__ = ["PaymentWorkflow"]
