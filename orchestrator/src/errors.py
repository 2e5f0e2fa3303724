"""
Error taxonomy for pipeline runs.

Every failure that can end up on a StageResult or a PipelineRun is a
PipelineError subclass. `kind` is the short name persisted with the run and
`retryable` tells the retry helper whether another attempt can help.
"""

from typing import Optional

class PipelineError(Exception):
    """Base class for errors raised while running a pipeline."""

    kind = "pipeline_error"
    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

class BuildFailure(PipelineError):
    """Compile, test or any other command stage failed."""

    kind = "build_failure"

class QualityGateFailure(PipelineError):
    """Coverage or lint threshold not met."""

    kind = "quality_gate_failure"

class SecurityFindingFailure(PipelineError):
    """Critical/high vulnerability or leaked secret detected."""

    kind = "security_finding_failure"

class RegistryError(PipelineError):
    """Authentication, network or tag conflict against an image registry."""

    kind = "registry_error"
    retryable = True

class TagImmutabilityError(RegistryError):
    """A tag already exists in the registry with different content."""

    kind = "tag_immutability_violation"
    retryable = False

class ManifestPatchConflict(PipelineError):
    """The manifest changed between read and write."""

    kind = "manifest_patch_conflict"
    retryable = True

class ManifestFormatError(PipelineError):
    """The manifest does not contain exactly one image reference line."""

    kind = "manifest_format_error"

class ApprovalTimeout(PipelineError):
    """A promotion stayed pending longer than the approval window."""

    kind = "approval_timeout"

class NotificationFailure(PipelineError):
    """Delivering a notification failed. Never fatal."""

    kind = "notification_failure"

class InvalidTransition(PipelineError):
    """A run was mutated in a way its state machine does not allow."""

    kind = "invalid_transition"

class InvalidTrigger(PipelineError):
    """A trigger event cannot be turned into a runnable pipeline."""

    kind = "invalid_trigger"
