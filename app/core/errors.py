"""Domain error taxonomy.

Every failure the enrollment flow reports to a client is an
EnrollmentError subclass carrying a stable ``error_code`` and the HTTP
status it maps to.  The exception handlers in app/main.py render them as
the error envelope::

    {"success": false, "message": ..., "errors": {...}, "error_code": ...}

TransientStoreError is different: it is raised by the stores for
deadlocks, serialization failures and lock timeouts, and never leaves
EnrollmentService, which retries it and converts exhaustion into
TransientEnrollmentError.
"""

from __future__ import annotations


class EnrollmentError(Exception):
    error_code = "ENROLLMENT_FAILED"
    status_code = 500
    default_message = "An error occurred while processing your enrollment"

    def __init__(
        self,
        message: str | None = None,
        *,
        errors: dict[str, list[str]] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.errors = errors or {"general": [self.message]}
        super().__init__(self.message)


# --- 404 ---


class CourseNotFoundError(EnrollmentError):
    error_code = "RESOURCE_NOT_FOUND"
    status_code = 404
    default_message = "The requested course or related resource was not found."


class EnrollmentNotFoundError(EnrollmentError):
    error_code = "RESOURCE_NOT_FOUND"
    status_code = 404
    default_message = "Enrollment not found"


# --- Preconditions ---


class CourseNotAvailableError(EnrollmentError):
    error_code = "COURSE_NOT_AVAILABLE"
    status_code = 409
    default_message = "This course is not currently available for enrollment."


class CourseFullError(EnrollmentError):
    error_code = "COURSE_FULL"
    status_code = 409
    default_message = "This course has reached maximum enrollment capacity."


class AlreadyEnrolledError(EnrollmentError):
    error_code = "ALREADY_ENROLLED"
    status_code = 409
    default_message = "This student is already enrolled in the course."


class StudentExistsError(EnrollmentError):
    error_code = "STUDENT_EXISTS"
    status_code = 409
    default_message = "A student with this email address already exists in the system."


class PriceMismatchError(EnrollmentError):
    error_code = "PRICE_MISMATCH"
    status_code = 422
    default_message = "Payment amount does not match the course price."


class InvalidCouponError(EnrollmentError):
    error_code = "INVALID_COUPON"
    status_code = 422
    default_message = "The coupon code is not valid."


class InvalidUnlockPlanError(EnrollmentError):
    error_code = "INVALID_MODULES"
    status_code = 422
    default_message = "Some specified modules or lessons do not belong to this course."


class InvalidTransitionError(EnrollmentError):
    error_code = "INVALID_STATUS_TRANSITION"
    status_code = 409
    default_message = "The enrollment cannot change to the requested status."


# --- Payment ---


class PaymentFailedError(EnrollmentError):
    error_code = "PAYMENT_FAILED"
    status_code = 402
    default_message = "Payment was declined; no enrollment was created."


# --- Transient ---


class TransientEnrollmentError(EnrollmentError):
    error_code = "TRANSIENT_FAILURE"
    status_code = 503
    default_message = "The enrollment could not be completed right now; please retry."


class TransientStoreError(Exception):
    """Deadlock, serialization failure or lock timeout in a store."""


class UniqueViolationError(Exception):
    """A unique constraint rejected a write at commit time.

    ``constraint`` names the violated key: "student_email",
    "student_course" or "enrollment_lesson".
    """

    def __init__(self, constraint: str) -> None:
        self.constraint = constraint
        super().__init__(f"unique constraint violated: {constraint}")
