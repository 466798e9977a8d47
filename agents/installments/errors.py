"""Exception types for the installment engine.

Only ``JobFatalError`` aborts a run; everything else is caught at the
agency or unit boundary and turned into a result value.
"""


class InstallmentEngineError(Exception):
    """Base class for installment engine failures."""


class TenantConfigError(InstallmentEngineError):
    """Agency configuration is missing or malformed; the agency is skipped."""

    def __init__(self, agency_id: str, message: str):
        super().__init__(f"agency {agency_id}: {message}")
        self.agency_id = agency_id


class TransitionConflict(InstallmentEngineError):
    """Guarded pending->overdue write matched no row (state changed concurrently)."""

    def __init__(self, installment_id: str):
        super().__init__(f"installment {installment_id} is no longer pending")
        self.installment_id = installment_id


class DedupConflict(InstallmentEngineError):
    """A reservation for the same dedup key already exists."""

    def __init__(self, key: tuple):
        super().__init__(f"notification already reserved for {key}")
        self.key = key


class ProviderDeliveryError(InstallmentEngineError):
    """External channel provider rejected or failed a send."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class JobFatalError(InstallmentEngineError):
    """Storage unreachable or a similar run-wide failure."""
