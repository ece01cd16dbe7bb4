from typing import Any, Dict, List, Optional


class WorkflowBuilderError(Exception):
    """Base exception for service errors"""
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Operation failed"):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class ValidationError(WorkflowBuilderError):
    """Raised when submitted content violates field or structural rules"""
    status_code = 400
    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[List[Dict[str, Any]]] = None,
        node_errors: Optional[Dict[str, Dict[str, List[Dict[str, Any]]]]] = None
    ):
        super().__init__(message)
        self.errors = errors or []
        self.node_errors = node_errors or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "errors": self.errors,
            "nodeErrors": self.node_errors,
        }


class ConflictError(WorkflowBuilderError):
    """Raised when the optimistic-lock hash no longer matches"""
    status_code = 409
    error_code = "CONFLICT"

    def __init__(self, server_hash: Optional[str], message: str = "Workflow was modified elsewhere"):
        super().__init__(message)
        self.server_hash = server_hash

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message, "serverHash": self.server_hash}


class VersionConflictError(WorkflowBuilderError):
    """Raised when a concurrent edit already versioned the definition"""
    status_code = 409
    error_code = "CONFLICT"


class AccessDeniedError(WorkflowBuilderError):
    """Raised when the caller does not own the resource"""
    status_code = 403
    error_code = "ACCESS_DENIED"


class NotFoundError(WorkflowBuilderError):
    """Raised when a resource does not exist"""
    status_code = 404
    error_code = "NOT_FOUND"


class ImmutableStateError(WorkflowBuilderError):
    """Raised when editing a definition whose status forbids it"""
    status_code = 400
    error_code = "IMMUTABLE_STATE"


class InvalidTransitionError(ImmutableStateError):
    """Raised for lifecycle moves the definition state machine does not allow"""
    error_code = "INVALID_STATUS_TRANSITION"


class StorageError(WorkflowBuilderError):
    """Raised when the datastore fails unexpectedly"""
    status_code = 500
    error_code = "STORAGE_ERROR"

    def to_dict(self) -> Dict[str, Any]:
        # Opaque to the caller
        return {"error": self.error_code, "message": "Internal server error"}
