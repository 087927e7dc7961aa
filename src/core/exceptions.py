"""AgencyFlow Exception Hierarchy.

All custom exceptions inherit from AgencyFlowError.
RunLockError is its own class because an overlapping tick is an
expected scheduling condition, not a failure of the work itself.

Exception Hierarchy:
    AgencyFlowError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── DatabaseError
    ├── IntegrationError
    │   └── EmailSendError
    ├── WorkflowError
    │   └── ProtectedNodeError
    └── RunLockError
"""


class AgencyFlowError(Exception):
    """Root of every error AgencyFlow raises on purpose.

    The CLI catches this to turn start-up failures into exit code 1.
    """

    pass


class ConfigurationError(AgencyFlowError):
    """An AGENCYFLOW_* setting cannot be used.

    Raised when a numeric variable does not parse. Missing credentials
    are reported by validate_config() instead.
    """

    pass


class ValidationError(AgencyFlowError):
    """Automation data breaks a rule.

    Raised when:
        - A condition definition has an unknown config type
        - Re-entry or pacing settings break their invariants
        - A workflow node has an unknown type
    """

    pass


class DatabaseError(AgencyFlowError):
    """SQLite store failure.

    Raised when:
        - The database file cannot be opened or its schema created
        - A statement fails inside a transaction
        - A stored filter_config or nodes column is not valid JSON
    """

    pass


class IntegrationError(AgencyFlowError):
    """An outbound service failed after its retry policy ran out."""

    pass


class EmailSendError(IntegrationError):
    """Handing an email to the sending service failed.

    Raised when:
        - The endpoint is unreachable
        - The endpoint rejects the request
        - Retries are exhausted
    """

    pass


class WorkflowError(AgencyFlowError):
    """Workflow graph operation failed.

    Raised when:
        - A node id does not exist
        - A branch is requested on a node without branches
    """

    pass


class ProtectedNodeError(WorkflowError):
    """Attempted structural change to a pinned node.

    Entry criteria and trigger nodes are always the first two nodes
    of a workflow. Deletes on them are silently ignored; this error is
    raised only for inserts that would displace them.
    """

    pass


class RunLockError(AgencyFlowError):
    """A scheduled action is already running.

    Raised when a tick tries to take a run-lock that another tick
    still holds. The caller should skip the tick, not retry it.
    """

    pass
