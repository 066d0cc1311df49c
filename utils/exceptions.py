"""
Custom exceptions for the admission-control and abuse-detection layer.
Type-safe error handling with clear semantics: configuration problems are rejected at
write time, store outages fail open, detection errors never leave an analysis run.
"""
import uuid
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categorization for better handling and monitoring."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    INFRASTRUCTURE = "infrastructure"
    DETECTION = "detection"
    SYSTEM = "system"


class GatekeeperError(Exception):
    """Base exception for all admission/detection errors with enhanced context."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.error_code = error_code or self._generate_error_code()
        self.severity = severity
        self.category = category
        self.correlation_id = correlation_id or str(uuid.uuid4())

    def _generate_error_code(self) -> str:
        """Generate a unique error code for tracking."""
        class_name = self.__class__.__name__
        return f"{class_name.upper()}_{int(self.timestamp.timestamp() * 1000)}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__,
        }


class ConfigurationError(GatekeeperError):
    """Malformed rule or setting, rejected synchronously when it is written."""

    def __init__(self, message: str, value: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        super().__init__(message, **kwargs)
        self.value = value
        self.details.setdefault("value", value)


class InvalidInputError(GatekeeperError):
    """A non-IP string was passed where an IP address is required."""

    def __init__(self, message: str, value: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, **kwargs)
        self.value = value
        self.details.setdefault("value", value)


class TransientStoreError(GatekeeperError):
    """Counter/cache backend unreachable or too slow; callers fail open."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.INFRASTRUCTURE)
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, **kwargs)
        self.operation = operation
        self.details.setdefault("operation", operation)


class DetectionRuntimeError(GatekeeperError):
    """Failure while scanning activity; converted into a neutral analysis result."""

    def __init__(self, message: str, target_type: Optional[str] = None,
                 target_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.DETECTION)
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        super().__init__(message, **kwargs)
        self.target_type = target_type
        self.target_id = target_id
        self.details.update({"target_type": target_type, "target_id": target_id})
