"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the approval engine (the request-handling layer, the timeout
scheduler, the CLI) must map failures to precise responses.  Parsing
message strings is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        service.act(approval_id, user_id, ApprovalAction.APPROVE)
    except UnauthorizedApproverError as e:
        return {"error": e.code, "approval_id": e.approval_id}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ApprovalEngineError:

    ApprovalEngineError (base)
    |
    +-- NotFoundError
    |   +-- WorkflowNotFoundError
    |   +-- ApprovalNotFoundError
    |   +-- StepNotFoundError
    |
    +-- ConflictError
    |   +-- DuplicatePendingApprovalError
    |   +-- WorkflowInUseError
    |
    +-- ForbiddenError
    |   +-- UnauthorizedApproverError
    |   +-- UnauthorizedDelegatorError
    |   +-- WorkflowAccessDeniedError
    |
    +-- InvalidRequestError
    |   +-- NoMatchingWorkflowError
    |   +-- InvalidWorkflowDefinitionError
    |   +-- ApprovalNotPendingError
    |   +-- InvalidDelegationError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
NotFound        | WORKFLOW_NOT_FOUND          | Template ID doesn't exist
                | APPROVAL_NOT_FOUND          | Approval request ID doesn't exist
                | STEP_NOT_FOUND              | Current step missing from template
----------------|-----------------------------|-----------------------------------------
Conflict        | DUPLICATE_PENDING_APPROVAL  | Document already has a PENDING request
                | WORKFLOW_IN_USE             | Deleting a template with PENDING requests
----------------|-----------------------------|-----------------------------------------
Forbidden       | UNAUTHORIZED_APPROVER       | Actor not an approver or delegate
                | UNAUTHORIZED_DELEGATOR      | Delegator not on the current step
                | WORKFLOW_ACCESS_DENIED      | Template owned by someone else
----------------|-----------------------------|-----------------------------------------
InvalidRequest  | NO_MATCHING_WORKFLOW        | Selector found no template (config bug)
                | INVALID_WORKFLOW_DEFINITION | Template failed validation (config bug)
                | APPROVAL_NOT_PENDING        | Acting on a non-PENDING request
                | INVALID_DELEGATION          | Self-delegation, bad expiry
----------------|-----------------------------|-----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Concurrent modification detected
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an append-only record

===============================================================================
HANDLING PATTERNS
===============================================================================

1. CATEGORIES MAP TO RESPONSES:

    NotFoundError       -> 404, never retried
    ConflictError       -> 409, caller must resolve
    ForbiddenError      -> 403
    InvalidRequestError -> 400 (NO_MATCHING_WORKFLOW / INVALID_WORKFLOW_DEFINITION
                           mean a broken template and are logged at ERROR)
    ConcurrencyError    -> retry when ``retryable`` is True

2. USE STRUCTURED DATA (not message parsing):

    except DuplicatePendingApprovalError as e:
        return {"error": e.code, "document_id": e.document_id}
"""


class ApprovalEngineError(Exception):
    """
    Base exception for all approval engine errors.

    All subclasses must have a `code` class attribute for
    machine-readable error identification.
    """

    code: str = "APPROVAL_ENGINE_ERROR"


# NotFound


class NotFoundError(ApprovalEngineError):
    """Base exception for references to missing entities."""

    code: str = "NOT_FOUND"


class WorkflowNotFoundError(NotFoundError):
    """Workflow template with given ID was not found."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ApprovalNotFoundError(NotFoundError):
    """Approval request with given ID was not found."""

    code: str = "APPROVAL_NOT_FOUND"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval request not found: {approval_id}")


class StepNotFoundError(NotFoundError):
    """
    The request's current step does not exist in its template.

    This is a data-integrity fault: the template and the request
    disagree.  It is never retried.
    """

    code: str = "STEP_NOT_FOUND"

    def __init__(self, approval_id: str, workflow_id: str, step_order: int):
        self.approval_id = approval_id
        self.workflow_id = workflow_id
        self.step_order = step_order
        super().__init__(
            f"Step {step_order} not found in workflow {workflow_id} "
            f"for approval {approval_id}"
        )


# Conflict


class ConflictError(ApprovalEngineError):
    """Base exception for state conflicts the caller must resolve."""

    code: str = "CONFLICT"


class DuplicatePendingApprovalError(ConflictError):
    """A PENDING approval request already exists for the document."""

    code: str = "DUPLICATE_PENDING_APPROVAL"

    def __init__(self, document_id: str, existing_approval_id: str | None = None):
        self.document_id = document_id
        self.existing_approval_id = existing_approval_id
        super().__init__(f"Document {document_id} is already pending approval")


class WorkflowInUseError(ConflictError):
    """Template cannot be deleted while PENDING requests reference it."""

    code: str = "WORKFLOW_IN_USE"

    def __init__(self, workflow_id: str, pending_count: int):
        self.workflow_id = workflow_id
        self.pending_count = pending_count
        super().__init__(
            f"Cannot delete workflow {workflow_id} with "
            f"{pending_count} pending approval(s)"
        )


# Forbidden


class ForbiddenError(ApprovalEngineError):
    """Base exception for authorization failures."""

    code: str = "FORBIDDEN"


class UnauthorizedApproverError(ForbiddenError):
    """Actor is neither an approver of the current step nor a delegate."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, approval_id: str, actor_id: str, step_order: int):
        self.approval_id = approval_id
        self.actor_id = actor_id
        self.step_order = step_order
        super().__init__(
            f"Actor {actor_id} is not authorized to act on step "
            f"{step_order} of approval {approval_id}"
        )


class UnauthorizedDelegatorError(ForbiddenError):
    """Only approvers of the current step may delegate it."""

    code: str = "UNAUTHORIZED_DELEGATOR"

    def __init__(self, approval_id: str, actor_id: str, step_order: int):
        self.approval_id = approval_id
        self.actor_id = actor_id
        self.step_order = step_order
        super().__init__(
            f"Actor {actor_id} is not an approver of step {step_order} "
            f"of approval {approval_id} and cannot delegate it"
        )


class WorkflowAccessDeniedError(ForbiddenError):
    """Template exists but belongs to another owner."""

    code: str = "WORKFLOW_ACCESS_DENIED"

    def __init__(self, workflow_id: str, actor_id: str):
        self.workflow_id = workflow_id
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} does not own workflow {workflow_id}")


# InvalidRequest


class InvalidRequestError(ApprovalEngineError):
    """Base exception for requests that cannot be honoured as given."""

    code: str = "INVALID_REQUEST"


class NoMatchingWorkflowError(InvalidRequestError):
    """No active template matched the document and no default exists."""

    code: str = "NO_MATCHING_WORKFLOW"

    def __init__(self, owner_id: str, document_id: str):
        self.owner_id = owner_id
        self.document_id = document_id
        super().__init__(
            f"No approval workflow configured for owner {owner_id} "
            f"(document {document_id})"
        )


class InvalidWorkflowDefinitionError(InvalidRequestError):
    """Template failed validation; ``errors`` lists every problem found."""

    code: str = "INVALID_WORKFLOW_DEFINITION"

    def __init__(self, workflow_name: str, errors: list[str]):
        self.workflow_name = workflow_name
        self.errors = errors
        super().__init__(
            f"Invalid workflow '{workflow_name}': {'; '.join(errors)}"
        )


class ApprovalNotPendingError(InvalidRequestError):
    """Operation requires a PENDING request."""

    code: str = "APPROVAL_NOT_PENDING"

    def __init__(self, approval_id: str, status: str):
        self.approval_id = approval_id
        self.status = status
        super().__init__(f"Approval request {approval_id} is not pending ({status})")


class InvalidDelegationError(InvalidRequestError):
    """Delegation parameters are not acceptable."""

    code: str = "INVALID_DELEGATION"

    def __init__(self, approval_id: str, reason: str):
        self.approval_id = approval_id
        self.reason = reason
        super().__init__(f"Invalid delegation for approval {approval_id}: {reason}")


# Concurrency


class ConcurrencyError(ApprovalEngineError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """
    Optimistic locking conflict detected.

    ``retryable`` is True when the conflict was detected before anything
    was written, so the caller may reload and re-apply the operation in
    the same unit of work.
    """

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
        retryable: bool = True,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.retryable = retryable
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability


class ImmutabilityError(ApprovalEngineError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only approval record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
