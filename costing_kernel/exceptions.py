"""
Typed Exception Hierarchy for the Costing Engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Costing errors must be handled precisely. A caller that closes a period
needs to tell a locked period apart from a missing standard cost without
parsing message strings. Every error therefore:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (material id, plant, amounts)

Example - WRONG way to handle errors:
    try:
        ledger.post(...)
    except Exception as e:
        if "locked" in str(e):
            retry_next_period()

Example - RIGHT way:
    try:
        ledger.post(...)
    except PeriodLockedError as e:
        log.warning("period %s/%s locked", e.fiscal_year, e.fiscal_period)
        api_response(code=e.code, plant=e.plant_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CostingKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidLotSizeError
    |   +-- InvalidQuantityError
    |   +-- EmptyDocumentError
    |   +-- ZeroBasisError
    |   +-- ManualAllocationMismatchError
    |   +-- NoCostComponentsError
    |   +-- InvalidStatusTransitionError
    |   +-- ExtensionAttributeError
    |
    +-- MissingReferenceDataError
    |   +-- MissingBOMError
    |   +-- MissingRoutingError
    |   +-- MissingCostingSheetError
    |   +-- MissingStandardCostError
    |   +-- IncompleteOverheadBaseError
    |   +-- CyclicStructureError
    |   +-- MissingActivityRateError
    |
    +-- NotFoundError
    |   +-- EstimateNotFoundError
    |   +-- DocumentNotFoundError
    |   +-- EntryNotFoundError
    |   +-- VarianceNotFoundError
    |   +-- CloseRunNotFoundError
    |
    +-- PostingError
    |   +-- NegativeBalanceError
    |   +-- EntryAlreadyReversedError
    |
    +-- CurrencyError
    |   +-- InvalidCurrencyError
    |   +-- CurrencyMismatchError
    |
    +-- PeriodError
    |   +-- PeriodLockedError
    |   +-- PeriodNotFoundError
    |   +-- PeriodSequenceError
    |
    +-- ConcurrencyError
    |   +-- ConcurrencyConflictError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- VarianceError
    |   +-- AlreadySettledError
    |
    +-- CloseError
        +-- StepFailureError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                         | When Raised
----------------|------------------------------|---------------------------------
Validation      | INVALID_LOT_SIZE             | Costing lot size <= 0
                | INVALID_QUANTITY             | Movement quantity <= 0
                | EMPTY_DOCUMENT               | Landed-cost document has no lines
                | ZERO_BASIS                   | Allocation basis sums to zero
                | MANUAL_ALLOCATION_MISMATCH   | Manual shares != charge amount
                | NO_COST_COMPONENTS           | Releasing an empty estimate
                | INVALID_STATUS_TRANSITION    | Lifecycle step out of order
                | EXTENSION_ATTRIBUTE_INVALID  | Custom attribute fails schema
----------------|------------------------------|---------------------------------
Reference data  | MISSING_BOM                  | BOM cannot be resolved
                | MISSING_ROUTING              | Routing cannot be resolved
                | MISSING_COSTING_SHEET        | Unknown overhead costing sheet
                | MISSING_STANDARD_COST        | No price for a component/view
                | INCOMPLETE_OVERHEAD_BASE     | Overhead base is zero, rate != 0
                | CYCLIC_STRUCTURE             | BOM refers back to itself
                | MISSING_ACTIVITY_RATE        | No labor/machine rate for plant
----------------|------------------------------|---------------------------------
Posting         | NEGATIVE_BALANCE             | Issue exceeds on-hand quantity
                | ENTRY_ALREADY_REVERSED       | Ledger entry reversed twice
----------------|------------------------------|---------------------------------
Period          | PERIOD_LOCKED                | Posting into a closing period
                | PERIOD_NOT_FOUND             | No period covers the date
                | PERIOD_SEQUENCE_VIOLATION    | Closing N+1 before N
----------------|------------------------------|---------------------------------
Concurrency     | CONCURRENCY_CONFLICT         | Version counter mismatch (retry)
Immutability    | IMMUTABILITY_VIOLATION       | Modifying an immutable record
Variance        | ALREADY_SETTLED              | Settling a variance twice
Close           | STEP_FAILURE                 | A period-close step failed

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Categories let callers react to a family of errors:
   - ValidationError -> reject input, nothing was written
   - MissingReferenceDataError -> fix master data, then retry
   - PeriodError -> choose another date or wait for close
   - ConcurrencyError -> retry the whole operation

2. ConcurrencyConflictError carries `retryable = True` so message consumers
   can redeliver without inspecting the type.

===============================================================================
"""


class CostingKernelError(Exception):
    """
    Base exception for all costing engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "COSTING_KERNEL_ERROR"
    retryable: bool = False


# Validation exceptions


class ValidationError(CostingKernelError):
    """Input rejected before any write."""

    code: str = "VALIDATION_ERROR"


class InvalidLotSizeError(ValidationError):
    """Costing lot size must be positive."""

    code: str = "INVALID_LOT_SIZE"

    def __init__(self, material_id: str, lot_size: object):
        self.material_id = material_id
        self.lot_size = lot_size
        super().__init__(
            f"Costing lot size must be > 0 for material {material_id}, "
            f"got {lot_size}"
        )


class InvalidQuantityError(ValidationError):
    """Movement or line quantity must be positive."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, material_id: str, quantity: object):
        self.material_id = material_id
        self.quantity = quantity
        super().__init__(
            f"Quantity must be > 0 for material {material_id}, got {quantity}"
        )


class EmptyDocumentError(ValidationError):
    """Landed-cost document has no lines to allocate to."""

    code: str = "EMPTY_DOCUMENT"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Landed cost document {document_id} has no lines")


class ZeroBasisError(ValidationError):
    """Allocation basis sums to zero."""

    code: str = "ZERO_BASIS"

    def __init__(self, basis: str, context: str = ""):
        self.basis = basis
        self.context = context
        suffix = f" ({context})" if context else ""
        super().__init__(f"Allocation basis {basis} sums to zero{suffix}")


class ManualAllocationMismatchError(ValidationError):
    """Manually specified shares do not add up to the charge."""

    code: str = "MANUAL_ALLOCATION_MISMATCH"

    def __init__(self, charge_amount: str, manual_total: str):
        self.charge_amount = charge_amount
        self.manual_total = manual_total
        super().__init__(
            f"Manual allocation total {manual_total} does not equal "
            f"charge amount {charge_amount}"
        )


class NoCostComponentsError(ValidationError):
    """An estimate without components cannot be released."""

    code: str = "NO_COST_COMPONENTS"

    def __init__(self, estimate_id: str):
        self.estimate_id = estimate_id
        super().__init__(f"Cost estimate {estimate_id} has no cost components")


class InvalidStatusTransitionError(ValidationError):
    """Lifecycle transition not allowed from the current status."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_status: str,
        target_status: str,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"{entity_type} {entity_id} cannot move from {current_status} "
            f"to {target_status}"
        )


class ExtensionAttributeError(ValidationError):
    """Custom attribute map does not satisfy the tenant schema."""

    code: str = "EXTENSION_ATTRIBUTE_INVALID"

    def __init__(self, entity_type: str, attribute: str, reason: str):
        self.entity_type = entity_type
        self.attribute = attribute
        self.reason = reason
        super().__init__(
            f"Invalid extension attribute {attribute!r} on {entity_type}: "
            f"{reason}"
        )


# Reference data exceptions


class MissingReferenceDataError(CostingKernelError):
    """Master data required for a calculation is absent."""

    code: str = "MISSING_REFERENCE_DATA"


class MissingBOMError(MissingReferenceDataError):
    """Bill of materials could not be resolved."""

    code: str = "MISSING_BOM"

    def __init__(self, material_id: str, bom_version: str | None = None):
        self.material_id = material_id
        self.bom_version = bom_version
        super().__init__(
            f"No BOM found for material {material_id} "
            f"(version: {bom_version or 'default'})"
        )


class MissingRoutingError(MissingReferenceDataError):
    """Routing could not be resolved."""

    code: str = "MISSING_ROUTING"

    def __init__(self, material_id: str, routing_version: str | None = None):
        self.material_id = material_id
        self.routing_version = routing_version
        super().__init__(
            f"No routing found for material {material_id} "
            f"(version: {routing_version or 'default'})"
        )


class MissingCostingSheetError(MissingReferenceDataError):
    """Overhead costing sheet is not configured."""

    code: str = "MISSING_COSTING_SHEET"

    def __init__(self, sheet_code: str):
        self.sheet_code = sheet_code
        super().__init__(f"Costing sheet not configured: {sheet_code}")


class MissingStandardCostError(MissingReferenceDataError):
    """No standard or current price available for a material."""

    code: str = "MISSING_STANDARD_COST"

    def __init__(self, material_id: str, plant_id: str, context: str = ""):
        self.material_id = material_id
        self.plant_id = plant_id
        self.context = context
        suffix = f" ({context})" if context else ""
        super().__init__(
            f"No standard cost for material {material_id} at plant "
            f"{plant_id}{suffix}"
        )


class IncompleteOverheadBaseError(MissingReferenceDataError):
    """Overhead base resolves to zero while the rate is non-zero."""

    code: str = "INCOMPLETE_OVERHEAD_BASE"

    def __init__(self, sheet_code: str, base: str, rate: str):
        self.sheet_code = sheet_code
        self.base = base
        self.rate = rate
        super().__init__(
            f"Costing sheet {sheet_code}: base {base} is zero but rate is "
            f"{rate}"
        )


class CyclicStructureError(MissingReferenceDataError):
    """A BOM contains itself through its components."""

    code: str = "CYCLIC_STRUCTURE"

    def __init__(self, path: list[str]):
        self.path = list(path)
        super().__init__(f"Cyclic BOM structure: {' -> '.join(self.path)}")


class MissingActivityRateError(MissingReferenceDataError):
    """No labor or machine rate is configured for the plant."""

    code: str = "MISSING_ACTIVITY_RATE"

    def __init__(self, plant_id: str):
        self.plant_id = plant_id
        super().__init__(f"No activity rates configured for plant {plant_id}")


# Lookup exceptions


class NotFoundError(CostingKernelError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class EstimateNotFoundError(NotFoundError):
    code: str = "ESTIMATE_NOT_FOUND"

    def __init__(self, estimate_id: str):
        self.estimate_id = estimate_id
        super().__init__(f"Cost estimate not found: {estimate_id}")


class DocumentNotFoundError(NotFoundError):
    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Landed cost document not found: {document_id}")


class EntryNotFoundError(NotFoundError):
    code: str = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Material ledger entry not found: {entry_id}")


class VarianceNotFoundError(NotFoundError):
    code: str = "VARIANCE_NOT_FOUND"

    def __init__(self, variance_id: str):
        self.variance_id = variance_id
        super().__init__(f"Cost variance not found: {variance_id}")


class CloseRunNotFoundError(NotFoundError):
    code: str = "CLOSE_RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Period close run not found: {run_id}")


# Posting exceptions


class PostingError(CostingKernelError):
    """Base exception for material ledger posting errors."""

    code: str = "POSTING_ERROR"


class NegativeBalanceError(PostingError):
    """Issue would drive on-hand quantity below zero."""

    code: str = "NEGATIVE_BALANCE"

    def __init__(
        self,
        material_id: str,
        plant_id: str,
        on_hand: str,
        requested: str,
    ):
        self.material_id = material_id
        self.plant_id = plant_id
        self.on_hand = on_hand
        self.requested = requested
        super().__init__(
            f"Issuing {requested} of material {material_id} at plant "
            f"{plant_id} exceeds on-hand quantity {on_hand}"
        )


class EntryAlreadyReversedError(PostingError):
    """Ledger entry was already reversed."""

    code: str = "ENTRY_ALREADY_REVERSED"

    def __init__(self, entry_id: str, reversal_entry_id: str):
        self.entry_id = entry_id
        self.reversal_entry_id = reversal_entry_id
        super().__init__(
            f"Ledger entry {entry_id} already reversed by {reversal_entry_id}"
        )


# Currency exceptions


class CurrencyError(CostingKernelError):
    code: str = "CURRENCY_ERROR"


class InvalidCurrencyError(CurrencyError):
    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Invalid currency code: {currency}")


class CurrencyMismatchError(CurrencyError):
    code: str = "CURRENCY_MISMATCH"

    def __init__(self, left: str, right: str):
        self.left = left
        self.right = right
        super().__init__(f"Currency mismatch: {left} vs {right}")


# Period exceptions


class PeriodError(CostingKernelError):
    """Base exception for fiscal period errors."""

    code: str = "PERIOD_ERROR"


class PeriodLockedError(PeriodError):
    """Posting into a period that is closing or closed."""

    code: str = "PERIOD_LOCKED"

    def __init__(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        status: str,
    ):
        self.plant_id = plant_id
        self.fiscal_year = fiscal_year
        self.fiscal_period = fiscal_period
        self.status = status
        super().__init__(
            f"Period {fiscal_year}/{fiscal_period:02d} at plant {plant_id} "
            f"is {status}"
        )


class PeriodNotFoundError(PeriodError):
    """No fiscal period covers the date or key."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, plant_id: str, reference: str):
        self.plant_id = plant_id
        self.reference = reference
        super().__init__(
            f"No fiscal period for plant {plant_id} covering {reference}"
        )


class PeriodSequenceError(PeriodError):
    """A later period cannot close before the earlier one."""

    code: str = "PERIOD_SEQUENCE_VIOLATION"

    def __init__(
        self,
        plant_id: str,
        requested: str,
        blocking: str,
    ):
        self.plant_id = plant_id
        self.requested = requested
        self.blocking = blocking
        super().__init__(
            f"Cannot close {requested} at plant {plant_id}: "
            f"prior period {blocking} is not closed"
        )


# Concurrency exceptions


class ConcurrencyError(CostingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrencyConflictError(ConcurrencyError):
    """Version counter mismatch; the whole operation may be retried."""

    code: str = "CONCURRENCY_CONFLICT"
    retryable: bool = True

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id} "
            f"(expected version {expected_version}, found {actual_version})"
        )


# Immutability exceptions


class ImmutabilityError(CostingKernelError):
    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Ledger entries and their valuations are always immutable; variances
    become immutable once settled; landed-cost documents once posted;
    close runs once terminal.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Variance exceptions


class VarianceError(CostingKernelError):
    code: str = "VARIANCE_ERROR"


class AlreadySettledError(VarianceError):
    """Variance was already settled."""

    code: str = "ALREADY_SETTLED"

    def __init__(self, variance_id: str, settlement_ref: str):
        self.variance_id = variance_id
        self.settlement_ref = settlement_ref
        super().__init__(
            f"Variance {variance_id} already settled by {settlement_ref}"
        )


# Period close exceptions


class CloseError(CostingKernelError):
    code: str = "CLOSE_ERROR"


class StepFailureError(CloseError):
    """A period-close step failed; the run is marked FAILED."""

    code: str = "STEP_FAILURE"

    def __init__(self, step_name: str, cause: BaseException):
        self.step_name = step_name
        self.cause_type = type(cause).__name__
        self.cause_code = getattr(cause, "code", None)
        self.cause_message = str(cause)
        super().__init__(
            f"Period close step {step_name} failed: "
            f"{self.cause_type}: {self.cause_message}"
        )
