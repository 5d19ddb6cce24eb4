"""
Custom exception classes for GhostVault.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class GhostVaultException(Exception):
    """Base exception class for GhostVault."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(GhostVaultException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class StoreError(GhostVaultException):
    """Raised when the durable store fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "STORE_ERROR", details)


class NodeRPCError(GhostVaultException):
    """Raised when a call to the Ghost node RPC fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "NODE_RPC_ERROR",
    ):
        super().__init__(message, code, details)


class NodeConnectionError(NodeRPCError):
    """Raised when the node cannot be reached (refused, reset, timed out)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "NODE_CONNECTION_ERROR")


class RPCAuthError(NodeRPCError):
    """Raised on 401 Unauthorized. Credentials are wrong; not recoverable."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "RPC_AUTH_ERROR")


class RPCMethodNotFoundError(NodeRPCError):
    """Raised on 404 from the node, meaning the binary does not match."""

    def __init__(self, method: str):
        super().__init__(
            f"Method not found: {method}",
            {"method": method},
            "RPC_METHOD_NOT_FOUND",
        )


class RPCNotFoundError(NodeRPCError):
    """Raised when the node answers that a transaction, block or key does not exist."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "RPC_NOT_FOUND")


class RemoteNodeError(GhostVaultException):
    """Raised when every remote reference node failed to answer."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "REMOTE_NODE_ERROR", details)


class IndexerError(GhostVaultException):
    """Raised when there's an event ingest error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INDEXER_ERROR", details)


class SchedulerError(GhostVaultException):
    """Raised when there's a scheduler error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)


class ValidationError(GhostVaultException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(GhostVaultException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class ExternalServiceError(GhostVaultException):
    """Raised when an external service error occurs."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "EXTERNAL_SERVICE_ERROR", details)


class TaskNotFoundError(NotFoundError):
    """Raised when a scheduled task record is missing."""

    def __init__(self, task_name: str):
        super().__init__(
            f"Scheduled task not found: {task_name}",
            {"task": task_name}
        )


class DaemonInstallError(ExternalServiceError):
    """Raised when downloading or unpacking the node binary fails."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Daemon install failed: {reason}", details)
