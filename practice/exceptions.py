class AutomationError(Exception):
    """Base class for task and invoice automation failures."""


class NotFound(AutomationError):
    pass


class InvalidTransition(AutomationError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move a task from {current!r} to {target!r}.")


class NotEligible(AutomationError):
    pass


class AlreadyInvoiced(AutomationError):
    """Another generator already billed the task; ``invoice`` is the winner."""

    def __init__(self, invoice):
        self.invoice = invoice
        super().__init__(f"Task is already billed by invoice {invoice.invoice_number}.")


class DeliveryError(AutomationError):
    pass
